import io
import os
import shlex
import socket
import posixpath
import re
from typing import Any, Dict, NamedTuple, Optional

import paramiko

from deploykit.core.errors import (
    AuthError,
    CommandError,
    DeploymentError,
    DeployTimeoutError,
    RemoteConnectionError,
    VerificationError,
)
from deploykit.core.logging import log
from deploykit.deploy.models import RemoteTarget

KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)
ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def shell_exports(env: Dict[str, Any], channel: str = "deploy") -> str:
    """Build an `export K=V; ` prefix. Keys that are not shell identifiers are dropped."""
    parts = []
    for key, value in env.items():
        if not ENV_KEY.match(str(key)):
            log(channel, f"skip env var with invalid name: {key!r}")
            continue
        parts.append(f"export {key}={shlex.quote(str(value))}; ")
    return "".join(parts)


class CommandResult(NamedTuple):
    output: str
    exit_code: int


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    last_err = None
    for cls in KEY_CLASSES:
        try:
            return cls.from_private_key(io.StringIO(text), password=passphrase or None)
        except paramiko.PasswordRequiredException as e:
            raise AuthError(f"private key is encrypted: {e}") from e
        except paramiko.SSHException as e:
            last_err = e
    raise AuthError(f"parse private key: {last_err}")


class RemoteSession:
    """
    One SSH connection plus an SFTP channel to a single host.

    Not shared between tasks. Every ``run`` opens its own exec channel, so
    a failed command leaves the session usable for the next one.
    """

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient, host: str, channel: str = "deploy"):
        self.client = client
        self.sftp = sftp
        self.host = host
        self.channel = channel
        self._closed = False

    @classmethod
    def connect(cls, target: RemoteTarget, timeout: int = 30, channel: str = "deploy") -> "RemoteSession":
        kwargs = {
            "hostname": target.host,
            "port": target.port,
            "username": target.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if target.auth_method == "key":
            kwargs["pkey"] = load_private_key(target.private_key or "", target.passphrase)
        else:
            kwargs["password"] = target.password

        client = paramiko.SSHClient()
        # Host keys are accepted on first sight.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        addr = f"{target.username}@{target.host}:{target.port}"
        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthError(f"authentication to {addr} rejected: {e}") from e
        except socket.timeout as e:
            client.close()
            raise DeployTimeoutError(f"connect to {addr} timed out after {timeout}s") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(f"connect to {addr}: {e}") from e

        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(f"open sftp on {addr}: {e}") from e

        log(channel, f"connected to {addr}")
        return cls(client, sftp, target.host, channel)

    # ---------- commands ----------
    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        transport = self.client.get_transport()
        if self._closed or transport is None or not transport.is_active():
            raise CommandError("session is closed", command=command)
        chan = None
        try:
            chan = transport.open_session()
            chan.set_combine_stderr(True)
            if timeout:
                chan.settimeout(timeout)
            chan.exec_command(command)
            output = chan.makefile("rb").read().decode("utf-8", errors="replace")
            exit_code = chan.recv_exit_status()
        except socket.timeout as e:
            raise DeployTimeoutError(f"command timed out after {timeout}s: {command}") from e
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"exec failed: {e}", command=command) from e
        finally:
            if chan is not None:
                chan.close()
        return CommandResult(output, exit_code)

    def check(self, command: str, timeout: Optional[float] = None) -> str:
        res = self.run(command, timeout=timeout)
        if res.exit_code != 0:
            detail = res.output.strip().splitlines()[-1] if res.output.strip() else f"exit code {res.exit_code}"
            raise CommandError(detail, command=command, exit_code=res.exit_code, output=res.output)
        return res.output

    # ---------- files ----------
    def _ensure_parent(self, remote_path: str):
        parent = posixpath.dirname(remote_path)
        if not parent or parent == "/":
            return
        try:
            res = self.run(f"mkdir -p {shlex.quote(parent)}")
            if res.exit_code != 0:
                log(self.channel, f"mkdir -p {parent} on {self.host} exited {res.exit_code}: {res.output.strip()}")
        except DeploymentError as e:
            log(self.channel, f"mkdir -p {parent} on {self.host} failed: {e}")

    def _remote_size(self, remote_path: str) -> int:
        return self.sftp.stat(remote_path).st_size

    def upload_bytes(self, remote_path: str, content: bytes) -> int:
        self._ensure_parent(remote_path)
        try:
            with self.sftp.open(remote_path, "wb") as f:
                f.write(content)
            size = self._remote_size(remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"upload {remote_path}: {e}", command=f"sftp put {remote_path}") from e
        if size != len(content):
            raise VerificationError(f"size mismatch for {remote_path}: wrote {len(content)} bytes, remote has {size}")
        return size

    def upload_file(self, local_path: str, remote_path: str) -> int:
        local_size = os.path.getsize(local_path)
        self._ensure_parent(remote_path)
        try:
            self.sftp.put(local_path, remote_path, confirm=False)
            size = self._remote_size(remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"upload {local_path} -> {remote_path}: {e}", command=f"sftp put {remote_path}") from e
        if size != local_size:
            raise VerificationError(f"size mismatch for {remote_path}: local {local_size} bytes, remote {size}")
        return size

    def chmod(self, remote_path: str, mode: int):
        try:
            self.sftp.chmod(remote_path, mode)
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(f"chmod {oct(mode)} {remote_path}: {e}", command=f"sftp chmod {remote_path}") from e

    # ---------- lifecycle ----------
    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.sftp.close()
        finally:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
