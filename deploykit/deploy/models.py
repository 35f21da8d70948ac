from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional, Literal, Union

from pydantic import BaseModel, Field, model_validator

AuthMethod = Literal["password", "key"]
ArtifactKind = Literal["config", "package", "certificate"]
TaskStatus = Literal["pending", "running", "success", "failed"]
StepStatus = Literal["running", "success", "failed", "skipped"]
HookType = Literal["pre_deploy", "post_deploy", "on_success", "on_failure"]
ScriptKind = Literal["shell", "bash", "python"]

DEFAULT_TARGET_PATHS = {
    "config": "/etc/nginx/nginx.conf",
    "package": "/tmp",
    "certificate": "/etc/nginx/ssl",
}


# ---------------- Catalog (owned by the CRUD layer) ----------------
class RemoteTarget(BaseModel):
    id: str
    name: str = ""
    host: str
    port: int = 22
    username: str = "root"
    auth_method: AuthMethod = "password"
    password: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None

    @model_validator(mode="after")
    def _check_auth(self):
        if self.auth_method == "password" and not self.password:
            raise ValueError("password is required for password auth")
        if self.auth_method == "key" and not self.private_key:
            raise ValueError("private_key is required for key auth")
        return self


class Certificate(BaseModel):
    id: str
    name: str = ""
    domain: str = ""
    cert_file_path: str
    key_file_path: str


class PackageParameter(BaseModel):
    name: str
    default: Optional[Any] = None
    required: bool = False


class Package(BaseModel):
    id: str
    name: str
    version: str = ""
    file_name: str
    file_path: str
    file_size: int = 0
    install_script: Optional[str] = None
    parameters: List[PackageParameter] = Field(default_factory=list)


class LocationRule(BaseModel):
    path: str
    match_type: Literal["prefix", "exact", "regex"] = "prefix"
    proxy_pass: str = ""
    root: str = ""
    try_files: str = ""


class ConfigRecord(BaseModel):
    id: str
    name: str = ""
    worker_processes: str = "auto"
    worker_connections: int = 1024
    enable_http: bool = True
    http_port: int = 80
    enable_https: bool = False
    https_port: int = 443
    certificate_id: Optional[str] = None
    http_to_https: bool = False
    server_name: str = "_"
    root_path: str = "/usr/share/nginx/html"
    index_files: str = "index.html index.htm"
    access_log_path: str = "/var/log/nginx/access.log"
    error_log_path: str = "/var/log/nginx/error.log"
    log_format: str = "main"
    enable_proxy: bool = False
    proxy_pass: str = ""
    client_max_body_size: str = "100m"
    gzip: bool = True
    custom_config: str = ""
    locations: List[LocationRule] = Field(default_factory=list)


class ScriptTemplate(BaseModel):
    id: str
    name: str = ""
    script_kind: ScriptKind = "shell"
    content: str
    timeout: int = 300
    work_dir: str = ""


# ---------------- Artifacts ----------------
class ConfigArtifact(BaseModel):
    kind: Literal["config"] = "config"
    config_id: str


class PackageArtifact(BaseModel):
    kind: Literal["package"] = "package"
    package_id: str


class CertificateArtifact(BaseModel):
    kind: Literal["certificate"] = "certificate"
    certificate_id: str


Artifact = Annotated[
    Union[ConfigArtifact, PackageArtifact, CertificateArtifact],
    Field(discriminator="kind"),
]


# ---------------- Engine records ----------------
class DeploymentTask(BaseModel):
    id: int = 0
    name: str
    description: str = ""
    artifact: Artifact
    server_id: str
    target_path: str
    backup_enabled: bool = False
    restart_service: bool = False
    service_name: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = "pending"
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: int = 0
    error_msg: str = ""
    backup_path: str = ""
    can_rollback: bool = False
    rolled_back_from: Optional[int] = None

    @property
    def kind(self) -> str:
        return self.artifact.kind


class DeploymentStep(BaseModel):
    id: int = 0
    task_id: int
    step: int
    action: str
    status: StepStatus = "running"
    output: str = ""
    error_msg: str = ""
    duration: int = 0
    created_at: datetime = Field(default_factory=datetime.now)


class Hook(BaseModel):
    id: int = 0
    task_id: int
    hook_type: HookType
    script: str
    script_kind: ScriptKind = "shell"
    timeout: int = 300
    work_dir: str = ""
    variables: Dict[str, str] = Field(default_factory=dict)
    script_id: Optional[str] = None
    executed: bool = False
    executed_at: Optional[datetime] = None
    status: str = ""
    output: str = ""
    error_msg: str = ""
    duration: int = 0
    created_at: datetime = Field(default_factory=datetime.now)


# ---------------- Requests ----------------
class TaskDescriptor(BaseModel):
    name: str
    description: str = ""
    kind: ArtifactKind
    server_id: str
    config_id: Optional[str] = None
    package_id: Optional[str] = None
    certificate_id: Optional[str] = None
    target_path: str = ""
    backup_enabled: bool = False
    restart_service: bool = False
    service_name: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_reference(self):
        refs = {
            "config": self.config_id,
            "package": self.package_id,
            "certificate": self.certificate_id,
        }
        if not refs[self.kind]:
            raise ValueError(f"{self.kind}_id is required for kind '{self.kind}'")
        extra = [k for k, v in refs.items() if k != self.kind and v]
        if extra:
            raise ValueError(f"kind '{self.kind}' does not take {', '.join(k + '_id' for k in extra)}")
        return self

    def build_artifact(self) -> Union[ConfigArtifact, PackageArtifact, CertificateArtifact]:
        if self.kind == "config":
            return ConfigArtifact(config_id=self.config_id)
        if self.kind == "package":
            return PackageArtifact(package_id=self.package_id)
        return CertificateArtifact(certificate_id=self.certificate_id)


class BatchDescriptor(TaskDescriptor):
    server_id: str = ""
    server_ids: List[str] = Field(min_length=1)
    auto_execute: bool = False


class HookSpec(BaseModel):
    hook_type: HookType
    script: str = ""
    script_kind: Optional[ScriptKind] = None
    timeout: Optional[int] = Field(default=None, ge=1)
    work_dir: str = ""
    variables: Dict[str, str] = Field(default_factory=dict)
    script_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self):
        if not self.script and not self.script_id:
            raise ValueError("either script or script_id is required")
        return self
