"""
Error taxonomy for the deployment engine.

Every error raised by a step ends up in two places: the step log row keeps
the full detail (command output), the task row keeps a one-line ``str(err)``.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for all engine errors."""


class RemoteConnectionError(DeploymentError, ConnectionError):
    """SSH session could not be established."""


class AuthError(DeploymentError):
    """Credentials could not be parsed or were rejected by the host."""


class DeployTimeoutError(DeploymentError, TimeoutError):
    """A bounded wait (connect or hook) ran out."""


class CommandError(DeploymentError):
    """A remote command failed or exited non-zero."""

    def __init__(self, message: str, command: str = "", exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class RenderError(DeploymentError):
    """Configuration record could not be rendered."""


class VerificationError(DeploymentError):
    """A write reported success but the independent check disagreed."""


class RollbackUnavailable(DeploymentError):
    """The task has no eligible backup to restore."""


class TaskNotFound(DeploymentError):
    pass


class TaskBusyError(DeploymentError):
    """An execution for this task id is already in flight."""


class InvalidTaskError(DeploymentError):
    """Task descriptor refers to missing records or is inconsistent."""
