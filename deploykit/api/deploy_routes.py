# deploykit/api/deploy_routes.py
import threading
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from deploykit.core.errors import (
    InvalidTaskError,
    RenderError,
    RollbackUnavailable,
    TaskBusyError,
    TaskNotFound,
)
from deploykit.core.settings import load_engine_config
from deploykit.deploy.engine import DeployEngine
from deploykit.deploy.models import BatchDescriptor, HookSpec, TaskDescriptor
from deploykit.deploy.render import render_config
from deploykit.deploy.store import JsonFileStorage

router = APIRouter()

_engine: Optional[DeployEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> DeployEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            cfg = load_engine_config()
            _engine = DeployEngine(JsonFileStorage(cfg.data_dir), cfg)
        return _engine


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, TaskNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (TaskBusyError, RollbackUnavailable)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


API_ERRORS = (TaskNotFound, TaskBusyError, RollbackUnavailable, InvalidTaskError, RenderError)


@router.post("/tasks")
def create_task(desc: TaskDescriptor, engine: DeployEngine = Depends(get_engine)):
    try:
        task = engine.create_task(desc)
    except API_ERRORS as e:
        raise _http_error(e)
    return {"status": "ok", "task": task.model_dump()}


@router.post("/tasks/batch")
def create_batch(desc: BatchDescriptor, engine: DeployEngine = Depends(get_engine)):
    try:
        tasks = engine.create_batch(desc)
    except API_ERRORS as e:
        raise _http_error(e)
    return {"status": "ok", "tasks": [t.model_dump() for t in tasks]}


@router.get("/tasks")
def list_tasks(status: Optional[str] = None, kind: Optional[str] = None,
               engine: DeployEngine = Depends(get_engine)):
    return {"tasks": [t.model_dump() for t in engine.list_tasks(status=status, kind=kind)]}


@router.get("/tasks/{task_id}")
def get_task(task_id: int, engine: DeployEngine = Depends(get_engine)):
    try:
        return engine.get_task(task_id).model_dump()
    except TaskNotFound as e:
        raise _http_error(e)


@router.get("/tasks/{task_id}/logs")
def get_task_logs(task_id: int, engine: DeployEngine = Depends(get_engine)):
    try:
        steps = engine.get_steps(task_id)
    except TaskNotFound as e:
        raise _http_error(e)
    return {"task_id": task_id, "steps": [s.model_dump() for s in steps]}


@router.get("/tasks/{task_id}/hooks")
def get_hooks(task_id: int, hook_type: Optional[str] = None, engine: DeployEngine = Depends(get_engine)):
    try:
        hooks = engine.list_hooks(task_id, hook_type)
    except TaskNotFound as e:
        raise _http_error(e)
    return {"hooks": [h.model_dump() for h in hooks]}


@router.post("/tasks/{task_id}/hooks")
def add_hook(task_id: int, spec: HookSpec, engine: DeployEngine = Depends(get_engine)):
    try:
        hook = engine.add_hook(task_id, spec)
    except API_ERRORS as e:
        raise _http_error(e)
    return {"status": "ok", "hook": hook.model_dump()}


@router.post("/tasks/{task_id}/execute")
def execute_task(task_id: int, engine: DeployEngine = Depends(get_engine)):
    try:
        task = engine.execute(task_id)
    except API_ERRORS as e:
        raise _http_error(e)
    return {"status": "ok", "message": "deployment started", "task": task.model_dump()}


@router.post("/tasks/{task_id}/rollback")
def rollback_task(task_id: int, engine: DeployEngine = Depends(get_engine)):
    try:
        task = engine.rollback(task_id)
    except API_ERRORS as e:
        raise _http_error(e)
    return {"status": "ok", "message": "rollback started", "task": task.model_dump()}


@router.post("/render/{config_id}")
def render(config_id: str, engine: DeployEngine = Depends(get_engine)):
    record = engine.storage.get_config(config_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"config {config_id} not found")
    cert = engine.storage.get_certificate(record.certificate_id) if record.certificate_id else None
    try:
        content = render_config(record, cert)
    except RenderError as e:
        raise _http_error(e)
    return {"config_id": config_id, "content": content}
