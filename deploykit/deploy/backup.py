import shlex
from datetime import datetime
from typing import Callable

from deploykit.core.errors import CommandError, RollbackUnavailable, VerificationError
from deploykit.core.logging import log
from deploykit.deploy.models import DeploymentTask
from deploykit.deploy.strategies import DeployContext, maybe_restart, validate_config

BACKUP_SUFFIX_FMT = "%Y%m%d%H%M%S"


def backup_name(path: str, now: datetime) -> str:
    return f"{path}.bak.{now.strftime(BACKUP_SUFFIX_FMT)}"


class BackupManager:
    """Timestamped copies of the deploy target, and restore from them."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def backup(self, ctx: DeployContext) -> str:
        task = ctx.task
        target = shlex.quote(task.target_path)
        with ctx.steps.step("backup target") as st:
            if ctx.session.run(f"test -f {target}").exit_code != 0:
                st.output = f"{task.target_path} does not exist, nothing to back up"
                return ""
            path = backup_name(task.target_path, self.clock())
            qb = shlex.quote(path)
            ctx.session.check(f"cp -p {target} {qb}")
            res = ctx.session.run(f"ls -l {qb}")
            if res.exit_code != 0:
                raise VerificationError(f"backup {path} missing after copy")
            st.output = res.output
            ctx.storage.update_task(task.id, backup_path=path)
            ctx.task = task.model_copy(update={"backup_path": path})
            log(ctx.channel, f"backup created: {path}")
            return path

    # ---------- rollback ----------
    def check_eligible(self, task: DeploymentTask):
        if not task.can_rollback or not task.backup_path:
            raise RollbackUnavailable(f"task {task.id} has no backup to roll back to")

    def rollback_task(self, original: DeploymentTask) -> DeploymentTask:
        """Unsaved task row that restores ``original``'s backup."""
        self.check_eligible(original)
        return DeploymentTask(
            name=f"rollback: {original.name}",
            description=f"rollback of task {original.id} from {original.backup_path}",
            artifact=original.artifact,
            server_id=original.server_id,
            target_path=original.target_path,
            backup_enabled=False,
            restart_service=original.restart_service,
            service_name=original.service_name,
            parameters=dict(original.parameters),
            rolled_back_from=original.id,
        )

    def restore(self, ctx: DeployContext, backup_path: str):
        qb = shlex.quote(backup_path)
        qt = shlex.quote(ctx.task.target_path)

        with ctx.steps.step("check backup") as st:
            res = ctx.session.run(f"test -f {qb}")
            if res.exit_code != 0:
                raise CommandError(f"backup {backup_path} not found on host", command=f"test -f {backup_path}",
                                   exit_code=res.exit_code, output=res.output)
            st.output = backup_path

        with ctx.steps.step("restore backup") as st:
            ctx.session.check(f"cp -p {qb} {qt}")
            if ctx.session.run(f"cmp -s {qb} {qt}").exit_code != 0:
                raise VerificationError(f"{ctx.task.target_path} differs from {backup_path} after restore")
            st.output = f"restored {ctx.task.target_path} from {backup_path}"

        if ctx.task.kind == "config":
            validate_config(ctx)
        maybe_restart(ctx)
