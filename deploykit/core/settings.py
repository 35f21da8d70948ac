import json
import os
from pydantic import BaseModel, Field

CONFIG_DIR = "configs"
CONFIG_FILE = os.path.join(CONFIG_DIR, "deploy_engine.json")


class EngineConfig(BaseModel):
    data_dir: str = os.path.join(CONFIG_DIR, "deploy")
    connect_timeout: int = Field(default=30, ge=1, le=300)
    default_hook_timeout: int = Field(default=300, ge=1)
    default_hook_work_dir: str = "/tmp"
    validate_command: str = "nginx -t"


def load_engine_config(path: str = CONFIG_FILE) -> EngineConfig:
    if not os.path.exists(path):
        return EngineConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return EngineConfig(**data)
    except (OSError, ValueError):
        return EngineConfig()


def save_engine_config(cfg: EngineConfig, path: str = CONFIG_FILE):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(cfg.model_dump_json(indent=2))
