import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Dict

from deploykit.core.errors import CommandError, InvalidTaskError, VerificationError
from deploykit.core.settings import EngineConfig
from deploykit.deploy.models import DeploymentTask
from deploykit.deploy.render import render_config
from deploykit.deploy.session import RemoteSession, shell_exports
from deploykit.deploy.steps import StepRecorder
from deploykit.deploy.store import DeployStorage

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")


@dataclass
class DeployContext:
    task: DeploymentTask
    session: RemoteSession
    steps: StepRecorder
    storage: DeployStorage
    settings: EngineConfig
    backup: Any = None  # BackupManager

    @property
    def channel(self) -> str:
        return self.steps.channel


# ---------------- shared steps ----------------
def validate_config(ctx: DeployContext):
    cmd = ctx.settings.validate_command
    with ctx.steps.step("validate config") as st:
        res = ctx.session.run(f"{cmd} 2>&1")
        st.output = res.output
        if res.exit_code != 0:
            raise CommandError(
                f"'{cmd}' exited with code {res.exit_code}",
                command=cmd, exit_code=res.exit_code, output=res.output,
            )


def restart_service(ctx: DeployContext, service: str):
    q = shlex.quote(service)
    with ctx.steps.step("restart service") as st:
        out = ctx.session.check(f"systemctl reload {q} 2>&1 || systemctl restart {q} 2>&1")
        state = ctx.session.run(f"systemctl is-active {q}").output.strip()
        st.output = f"{out}{service}: {state}"
        if state != "active":
            raise VerificationError(f"service {service} is {state or 'unknown'} after restart")


def maybe_restart(ctx: DeployContext):
    if ctx.task.restart_service and ctx.task.service_name:
        restart_service(ctx, ctx.task.service_name)


# ---------------- strategies ----------------
class ConfigStrategy:
    kind = "config"

    def run(self, ctx: DeployContext):
        task = ctx.task
        with ctx.steps.step("render config") as st:
            record = ctx.storage.get_config(task.artifact.config_id)
            if record is None:
                raise InvalidTaskError(f"config {task.artifact.config_id} not found")
            cert = ctx.storage.get_certificate(record.certificate_id) if record.certificate_id else None
            content = render_config(record, cert).encode("utf-8")
            st.output = f"{len(content)} bytes"

        if task.backup_enabled and ctx.backup is not None:
            ctx.backup.backup(ctx)

        with ctx.steps.step("upload config") as st:
            size = ctx.session.upload_bytes(task.target_path, content)
            st.output = f"uploaded {size} bytes to {task.target_path}"

        validate_config(ctx)
        maybe_restart(ctx)


def _extract_dir(target: str, file_name: str) -> str:
    for suffix in ARCHIVE_SUFFIXES:
        if file_name.endswith(suffix):
            return posixpath.join(target, file_name[: -len(suffix)])
    return ""


class PackageStrategy:
    kind = "package"

    def _environment(self, pkg, task: DeploymentTask) -> Dict[str, Any]:
        env = {p.name: p.default for p in pkg.parameters if p.default is not None}
        env.update(task.parameters)
        return env

    def run(self, ctx: DeployContext):
        task = ctx.task
        pkg = ctx.storage.get_package(task.artifact.package_id)
        if pkg is None:
            raise InvalidTaskError(f"package {task.artifact.package_id} not found")
        target = task.target_path
        qt = shlex.quote(target)

        with ctx.steps.step("create target directory") as st:
            st.output = ctx.session.check(f"mkdir -p {qt}")

        remote_file = posixpath.join(target, pkg.file_name)
        with ctx.steps.step("upload package") as st:
            size = ctx.session.upload_file(pkg.file_path, remote_file)
            st.output = f"uploaded {size / 1024 / 1024:.2f} MB to {remote_file}"

        extract_dir = ""
        qf = shlex.quote(pkg.file_name)
        if pkg.file_name.endswith(ARCHIVE_SUFFIXES):
            with ctx.steps.step("extract package") as st:
                st.output = ctx.session.check(f"cd {qt} && tar -xzf {qf}")
            extract_dir = _extract_dir(target, pkg.file_name)
        elif pkg.file_name.endswith(".zip"):
            with ctx.steps.step("extract package") as st:
                st.output = ctx.session.check(f"cd {qt} && unzip -o {qf}")

        with ctx.steps.step("find install script") as st:
            search_dir = target
            if extract_dir and ctx.session.run(f"test -d {shlex.quote(extract_dir)}").exit_code == 0:
                search_dir = extract_dir
            pattern = pkg.install_script or "*.sh"
            found = ctx.session.check(
                f"find {shlex.quote(search_dir)} -name {shlex.quote(pattern)} -type f | head -1"
            ).strip()
            if not found:
                st.skip(f"no install script matching {pattern} under {search_dir}")
                return
            st.output = found
        script = found

        with ctx.steps.step("set execute permission") as st:
            st.output = ctx.session.check(f"chmod +x {shlex.quote(script)}")

        with ctx.steps.step("run install script") as st:
            exports = shell_exports(self._environment(pkg, task), ctx.channel)
            cmd = f"cd {shlex.quote(posixpath.dirname(script))} && {exports}bash {shlex.quote(script)} 2>&1"
            res = ctx.session.run(cmd)
            st.output = res.output
            if res.exit_code != 0:
                raise CommandError(
                    f"install script exited with code {res.exit_code}",
                    command=script, exit_code=res.exit_code, output=res.output,
                )


class CertificateStrategy:
    kind = "certificate"

    def run(self, ctx: DeployContext):
        task = ctx.task
        cert = ctx.storage.get_certificate(task.artifact.certificate_id)
        if cert is None:
            raise InvalidTaskError(f"certificate {task.artifact.certificate_id} not found")
        target = task.target_path

        with ctx.steps.step("create certificate directory") as st:
            st.output = ctx.session.check(f"mkdir -p {shlex.quote(target)}")

        cert_remote = posixpath.join(target, posixpath.basename(cert.cert_file_path))
        key_remote = posixpath.join(target, posixpath.basename(cert.key_file_path))

        with ctx.steps.step("upload certificate") as st:
            size = ctx.session.upload_file(cert.cert_file_path, cert_remote)
            st.output = f"uploaded {size} bytes to {cert_remote}"

        with ctx.steps.step("upload private key") as st:
            size = ctx.session.upload_file(cert.key_file_path, key_remote)
            st.output = f"uploaded {size} bytes to {key_remote}"

        with ctx.steps.step("set file permissions") as st:
            st.output = ctx.session.check(
                f"chmod 644 {shlex.quote(cert_remote)} && chmod 600 {shlex.quote(key_remote)}"
            )

        maybe_restart(ctx)


STRATEGIES = {s.kind: s for s in (ConfigStrategy(), PackageStrategy(), CertificateStrategy())}


def get_strategy(kind: str):
    if kind not in STRATEGIES:
        raise InvalidTaskError(f"unsupported artifact kind: {kind}")
    return STRATEGIES[kind]
