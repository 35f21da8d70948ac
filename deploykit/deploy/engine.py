# deploykit/deploy/engine.py
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from deploykit.core.errors import (
    DeploymentError,
    InvalidTaskError,
    TaskBusyError,
    TaskNotFound,
)
from deploykit.core.logging import log, task_channel
from deploykit.core.settings import EngineConfig, load_engine_config
from deploykit.deploy.backup import BackupManager
from deploykit.deploy.hooks import HookRunner, build_hook
from deploykit.deploy.models import (
    DEFAULT_TARGET_PATHS,
    BatchDescriptor,
    DeploymentStep,
    DeploymentTask,
    Hook,
    HookSpec,
    RemoteTarget,
    TaskDescriptor,
)
from deploykit.deploy.session import RemoteSession
from deploykit.deploy.steps import StepLogger, StepRecorder
from deploykit.deploy.store import DeployStorage
from deploykit.deploy.strategies import DeployContext, get_strategy

SessionFactory = Callable[[RemoteTarget, int, str], RemoteSession]


class DeployEngine:
    def __init__(self, storage: DeployStorage, settings: Optional[EngineConfig] = None,
                 session_factory: Optional[SessionFactory] = None, backup: Optional[BackupManager] = None):
        self.storage = storage
        self.settings = settings or load_engine_config()
        self.session_factory = session_factory or RemoteSession.connect
        self.step_logger = StepLogger(storage)
        self.hooks = HookRunner(storage, self.settings)
        self.backup = backup or BackupManager()
        self._lock = threading.Lock()
        self._threads: Dict[int, threading.Thread] = {}

    # =========================
    # task creation
    # =========================
    def _check_artifact(self, desc: TaskDescriptor):
        if desc.kind == "config":
            if self.storage.get_config(desc.config_id) is None:
                raise InvalidTaskError(f"config {desc.config_id} not found")
        elif desc.kind == "certificate":
            if self.storage.get_certificate(desc.certificate_id) is None:
                raise InvalidTaskError(f"certificate {desc.certificate_id} not found")
        else:
            pkg = self.storage.get_package(desc.package_id)
            if pkg is None:
                raise InvalidTaskError(f"package {desc.package_id} not found")
            missing = [
                p.name for p in pkg.parameters
                if p.required and p.default in (None, "") and desc.parameters.get(p.name) in (None, "")
            ]
            if missing:
                raise InvalidTaskError(f"missing required package parameters: {', '.join(missing)}")

    def _server(self, server_id: str) -> RemoteTarget:
        server = self.storage.get_server(server_id)
        if server is None:
            raise InvalidTaskError(f"server {server_id} not found")
        return server

    def create_task(self, desc: TaskDescriptor) -> DeploymentTask:
        self._server(desc.server_id)
        self._check_artifact(desc)
        service = desc.service_name or ("nginx" if desc.kind == "config" else "")
        task = DeploymentTask(
            name=desc.name,
            description=desc.description,
            artifact=desc.build_artifact(),
            server_id=desc.server_id,
            target_path=desc.target_path or DEFAULT_TARGET_PATHS[desc.kind],
            backup_enabled=desc.backup_enabled,
            restart_service=desc.restart_service,
            service_name=service,
            parameters=dict(desc.parameters),
        )
        task = self.storage.create_task(task)
        log("deploy", f"task {task.id} created ({task.kind} -> {task.server_id}:{task.target_path})")
        return task

    def create_batch(self, desc: BatchDescriptor) -> List[DeploymentTask]:
        servers = [self._server(sid) for sid in desc.server_ids]
        base = desc.model_dump(exclude={"server_id", "server_ids", "auto_execute", "name"})
        tasks = []
        for server in servers:
            one = TaskDescriptor(name=f"{desc.name} - {server.name or server.host}", server_id=server.id, **base)
            tasks.append(self.create_task(one))
        if desc.auto_execute:
            for t in tasks:
                self.execute(t.id)
        return tasks

    def add_hook(self, task_id: int, spec: HookSpec) -> Hook:
        self.get_task(task_id)
        template = None
        if spec.script_id:
            template = self.storage.get_script(spec.script_id)
            if template is None:
                raise InvalidTaskError(f"script template {spec.script_id} not found")
        hook = build_hook(task_id, spec, self.settings, template)
        if not hook.script.strip():
            raise InvalidTaskError("hook script is empty")
        return self.storage.add_hook(hook)

    # =========================
    # execution
    # =========================
    def execute(self, task_id: int) -> DeploymentTask:
        """Start an execution in a daemon thread and return the running task."""
        task = self.get_task(task_id)
        with self._lock:
            t = self._threads.get(task_id)
            if t is not None and t.is_alive():
                raise TaskBusyError(f"task {task_id} is already running")
            task = self.storage.update_task(
                task_id,
                status="running",
                started_at=datetime.now(),
                completed_at=None,
                duration=0,
                error_msg="",
                backup_path="",
                can_rollback=False,
            )
            t = threading.Thread(target=self._run, args=(task_id,), daemon=True)
            self._threads[task_id] = t
        t.start()
        return task

    def rollback(self, task_id: int) -> DeploymentTask:
        original = self.get_task(task_id)
        new_task = self.storage.create_task(self.backup.rollback_task(original))
        log(task_channel(task_id), f"rollback requested, task {new_task.id} restores {original.backup_path}")
        return self.execute(new_task.id)

    def wait(self, task_id: int, timeout: Optional[float] = None) -> DeploymentTask:
        with self._lock:
            t = self._threads.get(task_id)
        if t is not None:
            t.join(timeout)
        return self.get_task(task_id)

    def _body(self, ctx: DeployContext):
        task = ctx.task
        if task.rolled_back_from:
            original = self.get_task(task.rolled_back_from)
            self.backup.restore(ctx, original.backup_path)
        else:
            get_strategy(task.kind).run(ctx)

    def _run(self, task_id: int):
        channel = task_channel(task_id)
        try:
            self._execute(task_id)
        except Exception as e:
            log(channel, f"CRASH {type(e).__name__}: {str(e)[:300]}")
            try:
                self._finish(self.get_task(task_id), f"internal error: {e}", "")
            except Exception as e2:
                log(channel, f"task state not saved: {e2}")
        finally:
            with self._lock:
                if self._threads.get(task_id) is threading.current_thread():
                    del self._threads[task_id]

    def _execute(self, task_id: int):
        task = self.get_task(task_id)
        channel = task_channel(task_id)
        log(channel, f"execution started: {task.name}")
        self.step_logger.reset(task_id)
        rec = StepRecorder(self.step_logger, task_id)
        session = None
        ctx = None
        error = ""
        pre_ok = False
        try:
            try:
                with rec.step("connect") as st:
                    server = self._server(task.server_id)
                    session = self.session_factory(server, self.settings.connect_timeout, channel)
                    st.output = f"connected to {server.username}@{server.host}:{server.port}"

                ctx = DeployContext(task, session, rec, self.storage, self.settings, self.backup)
                failed = self.hooks.run_type(ctx, "pre_deploy")
                if failed is not None:
                    error = f"hook pre_deploy #{failed.id} failed: {failed.error_msg}"
                else:
                    pre_ok = True
                    self._body(ctx)
            except (DeploymentError, OSError) as e:
                error = f"{rec.failed_action} failed: {e}" if rec.failed_action else str(e)

            if ctx is not None:
                if pre_ok:
                    self.hooks.run_type(ctx, "post_deploy")
                self.hooks.run_type(ctx, "on_failure" if error else "on_success")
        finally:
            if session is not None:
                session.close()

        self._finish(ctx.task if ctx else task, error, ctx.task.backup_path if ctx else "")

    def _finish(self, task: DeploymentTask, error: str, backup_path: str):
        now = datetime.now()
        started = task.started_at or now
        status = "failed" if error else "success"
        can_rollback = status == "success" and task.backup_enabled and bool(backup_path)
        self.storage.update_task(
            task.id,
            status=status,
            completed_at=now,
            duration=int((now - started).total_seconds()),
            error_msg=error,
            can_rollback=can_rollback,
        )
        log(task_channel(task.id), f"execution finished: {status}" + (f" ({error})" if error else ""))

    # =========================
    # queries
    # =========================
    def get_task(self, task_id: int) -> DeploymentTask:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFound(f"task {task_id} not found")
        return task

    def list_tasks(self, status: Optional[str] = None, kind: Optional[str] = None) -> List[DeploymentTask]:
        return self.storage.list_tasks(status=status, kind=kind)

    def get_steps(self, task_id: int) -> List[DeploymentStep]:
        self.get_task(task_id)
        return self.storage.list_steps(task_id)

    def list_hooks(self, task_id: int, hook_type: Optional[str] = None) -> List[Hook]:
        self.get_task(task_id)
        return self.storage.list_hooks(task_id, hook_type)
