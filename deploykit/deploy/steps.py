import time
from contextlib import contextmanager
from typing import Iterator

from deploykit.core.logging import log, task_channel
from deploykit.deploy.models import DeploymentStep
from deploykit.deploy.store import DeployStorage


class StepLogger:
    """Writes step rows. Storage failures are logged, never raised."""

    def __init__(self, storage: DeployStorage):
        self.storage = storage

    def begin(self, task_id: int, step: int, action: str) -> int:
        try:
            return self.storage.add_step(DeploymentStep(task_id=task_id, step=step, action=action))
        except Exception as e:
            log(task_channel(task_id), f"step log write failed (begin #{step} {action}): {e}")
            return 0

    def finish(self, task_id: int, step: int, status: str, output: str = "", error_msg: str = "", duration: int = 0):
        try:
            self.storage.update_step(task_id, step, status=status, output=output, error_msg=error_msg, duration=duration)
        except Exception as e:
            log(task_channel(task_id), f"step log write failed (finish #{step}): {e}")

    def reset(self, task_id: int):
        try:
            self.storage.delete_steps(task_id)
        except Exception as e:
            log(task_channel(task_id), f"step log purge failed: {e}")


class StepHandle:
    def __init__(self, action: str, number: int):
        self.action = action
        self.number = number
        self.output = ""
        self.skipped = False

    def skip(self, output: str = ""):
        self.skipped = True
        if output:
            self.output = output


class StepRecorder:
    """Numbers the steps of one execution, starting at 1."""

    def __init__(self, logger: StepLogger, task_id: int):
        self.logger = logger
        self.task_id = task_id
        self.count = 0
        self.failed_action = ""
        self.channel = task_channel(task_id)

    @contextmanager
    def step(self, action: str) -> Iterator[StepHandle]:
        self.count += 1
        handle = StepHandle(action, self.count)
        self.logger.begin(self.task_id, handle.number, action)
        log(self.channel, f"step {handle.number}: {action}")
        start = time.monotonic()
        try:
            yield handle
        except Exception as e:
            self.failed_action = action
            ms = int((time.monotonic() - start) * 1000)
            output = handle.output or getattr(e, "output", "") or ""
            self.logger.finish(self.task_id, handle.number, "failed", output, str(e), ms)
            log(self.channel, f"step {handle.number} failed: {e}")
            raise
        ms = int((time.monotonic() - start) * 1000)
        status = "skipped" if handle.skipped else "success"
        self.logger.finish(self.task_id, handle.number, status, handle.output, "", ms)
