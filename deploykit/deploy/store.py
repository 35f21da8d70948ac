import os
import json
import threading
from typing import Any, Dict, List, Optional, Protocol

from deploykit.core import secret_store
from deploykit.deploy.models import (
    Certificate,
    ConfigRecord,
    DeploymentStep,
    DeploymentTask,
    Hook,
    Package,
    RemoteTarget,
    ScriptTemplate,
)

SERVER_SECRET_FIELDS = ("password", "private_key", "passphrase")


class DeployStorage(Protocol):
    """Shape the engine needs from its persistence collaborator."""

    # catalog, written by the CRUD layer
    def save_server(self, server: RemoteTarget) -> None: ...
    def get_server(self, server_id: str) -> Optional[RemoteTarget]: ...
    def save_config(self, record: ConfigRecord) -> None: ...
    def get_config(self, config_id: str) -> Optional[ConfigRecord]: ...
    def save_package(self, pkg: Package) -> None: ...
    def get_package(self, package_id: str) -> Optional[Package]: ...
    def save_certificate(self, cert: Certificate) -> None: ...
    def get_certificate(self, certificate_id: str) -> Optional[Certificate]: ...
    def save_script(self, tpl: ScriptTemplate) -> None: ...
    def get_script(self, script_id: str) -> Optional[ScriptTemplate]: ...

    # tasks
    def create_task(self, task: DeploymentTask) -> DeploymentTask: ...
    def get_task(self, task_id: int) -> Optional[DeploymentTask]: ...
    def update_task(self, task_id: int, **fields: Any) -> DeploymentTask: ...
    def list_tasks(self, status: Optional[str] = None, kind: Optional[str] = None) -> List[DeploymentTask]: ...

    # step log
    def add_step(self, step: DeploymentStep) -> int: ...
    def update_step(self, task_id: int, step_no: int, **fields: Any) -> None: ...
    def list_steps(self, task_id: int) -> List[DeploymentStep]: ...
    def delete_steps(self, task_id: int) -> None: ...

    # hooks
    def add_hook(self, hook: Hook) -> Hook: ...
    def save_hook(self, hook: Hook) -> None: ...
    def list_hooks(self, task_id: int, hook_type: Optional[str] = None) -> List[Hook]: ...


def _filter_tasks(tasks: List[DeploymentTask], status: Optional[str], kind: Optional[str]) -> List[DeploymentTask]:
    res = [t for t in tasks if (not status or t.status == status) and (not kind or t.kind == kind)]
    res.sort(key=lambda t: t.id, reverse=True)
    return res


class MemoryStorage:
    def __init__(self):
        self._lock = threading.Lock()
        self._catalog: Dict[str, Dict[str, Any]] = {
            "server": {}, "config": {}, "package": {}, "certificate": {}, "script": {},
        }
        self._tasks: Dict[int, DeploymentTask] = {}
        self._steps: Dict[int, List[DeploymentStep]] = {}
        self._hooks: Dict[int, List[Hook]] = {}
        self._seq = {"task": 0, "step": 0, "hook": 0}

    def _next(self, name: str) -> int:
        self._seq[name] += 1
        return self._seq[name]

    def _put(self, kind: str, key: str, obj):
        with self._lock:
            self._catalog[kind][key] = obj.model_copy(deep=True)

    def _get(self, kind: str, key: str):
        with self._lock:
            obj = self._catalog[kind].get(key)
            return obj.model_copy(deep=True) if obj else None

    def save_server(self, server: RemoteTarget) -> None:
        self._put("server", server.id, server)

    def get_server(self, server_id: str) -> Optional[RemoteTarget]:
        return self._get("server", server_id)

    def save_config(self, record: ConfigRecord) -> None:
        self._put("config", record.id, record)

    def get_config(self, config_id: str) -> Optional[ConfigRecord]:
        return self._get("config", config_id)

    def save_package(self, pkg: Package) -> None:
        self._put("package", pkg.id, pkg)

    def get_package(self, package_id: str) -> Optional[Package]:
        return self._get("package", package_id)

    def save_certificate(self, cert: Certificate) -> None:
        self._put("certificate", cert.id, cert)

    def get_certificate(self, certificate_id: str) -> Optional[Certificate]:
        return self._get("certificate", certificate_id)

    def save_script(self, tpl: ScriptTemplate) -> None:
        self._put("script", tpl.id, tpl)

    def get_script(self, script_id: str) -> Optional[ScriptTemplate]:
        return self._get("script", script_id)

    def create_task(self, task: DeploymentTask) -> DeploymentTask:
        with self._lock:
            stored = task.model_copy(update={"id": self._next("task")}, deep=True)
            self._tasks[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_task(self, task_id: int) -> Optional[DeploymentTask]:
        with self._lock:
            t = self._tasks.get(task_id)
            return t.model_copy(deep=True) if t else None

    def update_task(self, task_id: int, **fields: Any) -> DeploymentTask:
        with self._lock:
            if task_id not in self._tasks:
                raise KeyError(task_id)
            t = self._tasks[task_id].model_copy(update=fields, deep=True)
            self._tasks[task_id] = t
            return t.model_copy(deep=True)

    def list_tasks(self, status: Optional[str] = None, kind: Optional[str] = None) -> List[DeploymentTask]:
        with self._lock:
            tasks = [t.model_copy(deep=True) for t in self._tasks.values()]
        return _filter_tasks(tasks, status, kind)

    def add_step(self, step: DeploymentStep) -> int:
        with self._lock:
            row = step.model_copy(update={"id": self._next("step")})
            self._steps.setdefault(step.task_id, []).append(row)
            return row.id

    def update_step(self, task_id: int, step_no: int, **fields: Any) -> None:
        with self._lock:
            rows = self._steps.get(task_id, [])
            for i, row in enumerate(rows):
                if row.step == step_no:
                    rows[i] = row.model_copy(update=fields)

    def list_steps(self, task_id: int) -> List[DeploymentStep]:
        with self._lock:
            rows = [r.model_copy() for r in self._steps.get(task_id, [])]
        return sorted(rows, key=lambda r: r.step)

    def delete_steps(self, task_id: int) -> None:
        with self._lock:
            self._steps.pop(task_id, None)

    def add_hook(self, hook: Hook) -> Hook:
        with self._lock:
            stored = hook.model_copy(update={"id": self._next("hook")}, deep=True)
            self._hooks.setdefault(hook.task_id, []).append(stored)
            return stored.model_copy(deep=True)

    def save_hook(self, hook: Hook) -> None:
        with self._lock:
            rows = self._hooks.setdefault(hook.task_id, [])
            for i, row in enumerate(rows):
                if row.id == hook.id:
                    rows[i] = hook.model_copy(deep=True)
                    return
            rows.append(hook.model_copy(deep=True))

    def list_hooks(self, task_id: int, hook_type: Optional[str] = None) -> List[Hook]:
        with self._lock:
            rows = [h.model_copy(deep=True) for h in self._hooks.get(task_id, [])
                    if not hook_type or h.hook_type == hook_type]
        return sorted(rows, key=lambda h: h.id)


class JsonFileStorage:
    """
    One JSON document per record under ``base_dir``.

    Layout:
        server_<id>.json, config_<id>.json, package_<id>.json,
        certificate_<id>.json, script_<id>.json   catalog
        task_<id>.json                             task rows
        steps_<task id>.json, hooks_<task id>.json per-task lists
        _seq.json                                  id counters
    Server credentials are sealed with AES-GCM before they hit disk.
    """

    def __init__(self, base_dir: str, key_dir: Optional[str] = None):
        self.base_dir = base_dir
        self.key_dir = key_dir or os.path.join(base_dir, "keys")
        self._lock = threading.RLock()
        os.makedirs(base_dir, exist_ok=True)

    # ---------- helpers ----------
    def _path(self, prefix: str, key: Any) -> str:
        key = str(key).strip()
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid record id: {key!r}")
        return os.path.join(self.base_dir, f"{prefix}_{key}.json")

    def _write_json(self, path: str, data: Any):
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp, path)

    def _read_json(self, path: str) -> Optional[Any]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _next(self, name: str) -> int:
        p = os.path.join(self.base_dir, "_seq.json")
        seq = self._read_json(p) or {}
        seq[name] = int(seq.get(name, 0)) + 1
        self._write_json(p, seq)
        return seq[name]

    def _save_model(self, prefix: str, key: Any, obj):
        with self._lock:
            self._write_json(self._path(prefix, key), obj.model_dump(mode="json"))

    def _load_model(self, prefix: str, key: Any, cls):
        with self._lock:
            data = self._read_json(self._path(prefix, key))
        return cls(**data) if data is not None else None

    # ---------- catalog ----------
    def save_server(self, server: RemoteTarget) -> None:
        data = secret_store.seal_fields(server.id, server.model_dump(), SERVER_SECRET_FIELDS, self.key_dir)
        with self._lock:
            self._write_json(self._path("server", server.id), data)

    def get_server(self, server_id: str) -> Optional[RemoteTarget]:
        with self._lock:
            data = self._read_json(self._path("server", server_id))
        if data is None:
            return None
        return RemoteTarget(**secret_store.open_fields(server_id, data, SERVER_SECRET_FIELDS, self.key_dir))

    def save_config(self, record: ConfigRecord) -> None:
        self._save_model("config", record.id, record)

    def get_config(self, config_id: str) -> Optional[ConfigRecord]:
        return self._load_model("config", config_id, ConfigRecord)

    def save_package(self, pkg: Package) -> None:
        self._save_model("package", pkg.id, pkg)

    def get_package(self, package_id: str) -> Optional[Package]:
        return self._load_model("package", package_id, Package)

    def save_certificate(self, cert: Certificate) -> None:
        self._save_model("certificate", cert.id, cert)

    def get_certificate(self, certificate_id: str) -> Optional[Certificate]:
        return self._load_model("certificate", certificate_id, Certificate)

    def save_script(self, tpl: ScriptTemplate) -> None:
        self._save_model("script", tpl.id, tpl)

    def get_script(self, script_id: str) -> Optional[ScriptTemplate]:
        return self._load_model("script", script_id, ScriptTemplate)

    # ---------- tasks ----------
    def create_task(self, task: DeploymentTask) -> DeploymentTask:
        with self._lock:
            stored = task.model_copy(update={"id": self._next("task")})
            self._save_model("task", stored.id, stored)
            return stored

    def get_task(self, task_id: int) -> Optional[DeploymentTask]:
        return self._load_model("task", task_id, DeploymentTask)

    def update_task(self, task_id: int, **fields: Any) -> DeploymentTask:
        with self._lock:
            current = self.get_task(task_id)
            if current is None:
                raise KeyError(task_id)
            updated = current.model_copy(update=fields)
            self._save_model("task", task_id, updated)
            return updated

    def list_tasks(self, status: Optional[str] = None, kind: Optional[str] = None) -> List[DeploymentTask]:
        tasks = []
        with self._lock:
            for name in os.listdir(self.base_dir):
                if name.startswith("task_") and name.endswith(".json"):
                    data = self._read_json(os.path.join(self.base_dir, name))
                    if data is not None:
                        tasks.append(DeploymentTask(**data))
        return _filter_tasks(tasks, status, kind)

    # ---------- step log ----------
    def _load_steps(self, task_id: int) -> List[DeploymentStep]:
        return [DeploymentStep(**r) for r in (self._read_json(self._path("steps", task_id)) or [])]

    def _dump_list(self, prefix: str, task_id: int, rows: list):
        self._write_json(self._path(prefix, task_id), [r.model_dump(mode="json") for r in rows])

    def add_step(self, step: DeploymentStep) -> int:
        with self._lock:
            rows = self._load_steps(step.task_id)
            row = step.model_copy(update={"id": self._next("step")})
            rows.append(row)
            self._dump_list("steps", step.task_id, rows)
            return row.id

    def update_step(self, task_id: int, step_no: int, **fields: Any) -> None:
        with self._lock:
            rows = self._load_steps(task_id)
            rows = [r.model_copy(update=fields) if r.step == step_no else r for r in rows]
            self._dump_list("steps", task_id, rows)

    def list_steps(self, task_id: int) -> List[DeploymentStep]:
        with self._lock:
            rows = self._load_steps(task_id)
        return sorted(rows, key=lambda r: r.step)

    def delete_steps(self, task_id: int) -> None:
        with self._lock:
            p = self._path("steps", task_id)
            if os.path.exists(p):
                os.remove(p)

    # ---------- hooks ----------
    def _load_hooks(self, task_id: int) -> List[Hook]:
        return [Hook(**r) for r in (self._read_json(self._path("hooks", task_id)) or [])]

    def add_hook(self, hook: Hook) -> Hook:
        with self._lock:
            rows = self._load_hooks(hook.task_id)
            stored = hook.model_copy(update={"id": self._next("hook")})
            rows.append(stored)
            self._dump_list("hooks", hook.task_id, rows)
            return stored

    def save_hook(self, hook: Hook) -> None:
        with self._lock:
            rows = [h for h in self._load_hooks(hook.task_id) if h.id != hook.id]
            rows.append(hook)
            rows.sort(key=lambda h: h.id)
            self._dump_list("hooks", hook.task_id, rows)

    def list_hooks(self, task_id: int, hook_type: Optional[str] = None) -> List[Hook]:
        with self._lock:
            rows = self._load_hooks(task_id)
        return sorted([h for h in rows if not hook_type or h.hook_type == hook_type], key=lambda h: h.id)
