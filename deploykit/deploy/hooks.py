import posixpath
import re
import secrets
import shlex
import threading
import time
from datetime import datetime
from typing import Optional

from deploykit.core.errors import CommandError, DeploymentError, DeployTimeoutError
from deploykit.core.logging import log
from deploykit.core.settings import EngineConfig
from deploykit.deploy.models import Hook, HookSpec, ScriptTemplate
from deploykit.deploy.session import RemoteSession, shell_exports
from deploykit.deploy.store import DeployStorage
from deploykit.deploy.strategies import DeployContext

SHEBANGS = {
    "shell": "#!/bin/bash\nset -e\n\n",
    "bash": "#!/bin/bash\nset -e\n\n",
    "python": "#!/usr/bin/env python3\n\n",
}


def with_shebang(script: str, script_kind: str) -> str:
    if script.startswith("#!"):
        return script
    return SHEBANGS.get(script_kind, SHEBANGS["shell"]) + script


def kill_pattern(path: str) -> str:
    """pkill -f regex for the script that does not match the shell running pkill."""
    head, name = posixpath.split(path)
    return f"{re.escape(head)}/[{name[0]}]{re.escape(name[1:])}"


def build_hook(task_id: int, spec: HookSpec, settings: EngineConfig,
               template: Optional[ScriptTemplate] = None) -> Hook:
    """Hook row from a request; explicit fields win over the template's."""
    script = spec.script or (template.content if template else "")
    kind = spec.script_kind or (template.script_kind if template else "shell")
    timeout = spec.timeout or (template.timeout if template else settings.default_hook_timeout)
    work_dir = spec.work_dir or (template.work_dir if template else "") or settings.default_hook_work_dir
    return Hook(
        task_id=task_id,
        hook_type=spec.hook_type,
        script=script,
        script_kind=kind,
        timeout=timeout,
        work_dir=work_dir,
        variables=dict(spec.variables),
        script_id=spec.script_id,
    )


class HookRunner:
    def __init__(self, storage: DeployStorage, settings: EngineConfig):
        self.storage = storage
        self.settings = settings

    def _script_path(self, hook: Hook, work_dir: str) -> str:
        ext = ".py" if hook.script_kind == "python" else ".sh"
        return posixpath.join(work_dir, f"deploykit_hook_{hook.id}_{hook.hook_type}_{secrets.token_hex(4)}{ext}")

    def _cleanup(self, session: RemoteSession, command: str, channel: str):
        try:
            session.run(command)
        except DeploymentError as e:
            log(channel, f"hook cleanup failed ({command}): {e}")

    def execute(self, session: RemoteSession, hook: Hook, channel: str = "deploy") -> Hook:
        """Run one hook on the host and persist its outcome."""
        start = time.monotonic()
        work_dir = hook.work_dir or self.settings.default_hook_work_dir
        timeout = hook.timeout or self.settings.default_hook_timeout
        path = self._script_path(hook, work_dir)
        qp = shlex.quote(path)
        status, output, error_msg = "failed", "", ""

        try:
            session.upload_bytes(path, with_shebang(hook.script, hook.script_kind).encode("utf-8"))
            session.chmod(path, 0o755)
            cmd = f"cd {shlex.quote(work_dir)} && {shell_exports(hook.variables, channel)}{qp}"

            box = {}

            def worker():
                try:
                    box["result"] = session.run(cmd)
                except Exception as e:
                    box["error"] = e

            t = threading.Thread(target=worker, daemon=True)
            t.start()
            t.join(timeout)

            if t.is_alive():
                error_msg = str(DeployTimeoutError(f"hook timed out after {timeout} seconds"))
                self._cleanup(session, f"pkill -f {shlex.quote(kill_pattern(path))}", channel)
                self._cleanup(session, f"rm -f {qp}", channel)
            else:
                self._cleanup(session, f"rm -f {qp}", channel)
                if "error" in box:
                    error_msg = str(box["error"])
                else:
                    res = box["result"]
                    output = res.output
                    if res.exit_code == 0:
                        status = "success"
                    else:
                        error_msg = f"hook script exited with code {res.exit_code}"
        except DeploymentError as e:
            error_msg = str(e)

        updated = hook.model_copy(update={
            "executed": True,
            "executed_at": datetime.now(),
            "status": status,
            "output": output,
            "error_msg": error_msg,
            "duration": int((time.monotonic() - start) * 1000),
        })
        try:
            self.storage.save_hook(updated)
        except Exception as e:
            log(channel, f"hook #{hook.id} result not saved: {e}")
        log(channel, f"hook {hook.hook_type} #{hook.id}: {status}" + (f" ({error_msg})" if error_msg else ""))
        return updated

    def run_type(self, ctx: DeployContext, hook_type: str) -> Optional[Hook]:
        """
        Run every hook of one type in creation order.

        Returns the first failed hook, or None. pre_deploy stops at the first
        failure, the other types keep going.
        """
        first_failed = None
        for hook in self.storage.list_hooks(ctx.task.id, hook_type):
            try:
                with ctx.steps.step(f"hook {hook_type} #{hook.id}") as st:
                    done = self.execute(ctx.session, hook, ctx.channel)
                    st.output = done.output
                    if done.status != "success":
                        raise CommandError(done.error_msg, command=hook.script, output=done.output)
            except DeploymentError:
                if first_failed is None:
                    first_failed = done
                if hook_type == "pre_deploy":
                    break
        return first_failed
