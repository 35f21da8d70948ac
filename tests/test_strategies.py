import pytest

from deploykit.core.errors import CommandError, VerificationError
from deploykit.deploy.backup import BackupManager
from deploykit.deploy.models import (
    CertificateArtifact,
    ConfigArtifact,
    DeploymentTask,
    Package,
    PackageArtifact,
)
from deploykit.deploy.steps import StepLogger, StepRecorder
from deploykit.deploy.strategies import (
    CertificateStrategy,
    ConfigStrategy,
    DeployContext,
    PackageStrategy,
)


def make_ctx(storage, settings, fake, **task_fields):
    task = storage.create_task(DeploymentTask(name="t", server_id="web1", **task_fields))
    rec = StepRecorder(StepLogger(storage), task.id)
    return DeployContext(task, fake, rec, storage, settings, BackupManager())


def actions(storage, task_id):
    return [(s.step, s.action, s.status) for s in storage.list_steps(task_id)]


def test_config_strategy_uploads_validates_and_restarts(storage, settings, fake):
    fake.on("systemctl is-active", "active\n")
    ctx = make_ctx(storage, settings, fake, artifact=ConfigArtifact(config_id="site"),
                   target_path="/etc/nginx/nginx.conf", restart_service=True, service_name="nginx")
    ConfigStrategy().run(ctx)

    assert actions(storage, ctx.task.id) == [
        (1, "render config", "success"),
        (2, "upload config", "success"),
        (3, "validate config", "success"),
        (4, "restart service", "success"),
    ]
    assert b"server_name example.com;" in fake.uploads["/etc/nginx/nginx.conf"]
    assert fake.ran("nginx -t 2>&1")
    assert fake.ran("systemctl reload nginx 2>&1 || systemctl restart nginx 2>&1")


def test_config_validation_failure_keeps_output_on_step(storage, settings, fake):
    fake.on("nginx -t", "nginx: [emerg] unknown directive \"foo\"\n", exit_code=1)
    ctx = make_ctx(storage, settings, fake, artifact=ConfigArtifact(config_id="site"),
                   target_path="/etc/nginx/nginx.conf", restart_service=True, service_name="nginx")
    with pytest.raises(CommandError):
        ConfigStrategy().run(ctx)

    steps = storage.list_steps(ctx.task.id)
    assert steps[-1].action == "validate config"
    assert steps[-1].status == "failed"
    assert "unknown directive" in steps[-1].output
    assert not fake.ran("systemctl")


def test_restart_checks_service_is_active(storage, settings, fake):
    fake.on("systemctl is-active", "failed\n", exit_code=3)
    ctx = make_ctx(storage, settings, fake, artifact=ConfigArtifact(config_id="site"),
                   target_path="/etc/nginx/nginx.conf", restart_service=True, service_name="nginx")
    with pytest.raises(VerificationError):
        ConfigStrategy().run(ctx)
    assert storage.list_steps(ctx.task.id)[-1].action == "restart service"


def test_package_strategy_full_flow(storage, settings, fake):
    fake.on("find /opt/redis/redis-7.2 ", "/opt/redis/redis-7.2/install.sh\n")
    fake.on("bash /opt/redis/redis-7.2/install.sh", "installed\n")
    ctx = make_ctx(storage, settings, fake, artifact=PackageArtifact(package_id="redis"),
                   target_path="/opt/redis", parameters={"PASSWORD": "p@ss word", "bad-key": "x"})
    PackageStrategy().run(ctx)

    assert [a for _, a, _ in actions(storage, ctx.task.id)] == [
        "create target directory",
        "upload package",
        "extract package",
        "find install script",
        "set execute permission",
        "run install script",
    ]
    assert "/opt/redis/redis-7.2.tar.gz" in fake.uploads
    assert fake.ran("cd /opt/redis && tar -xzf redis-7.2.tar.gz")
    assert fake.ran("chmod +x /opt/redis/redis-7.2/install.sh")
    install = fake.ran("bash /opt/redis/redis-7.2/install.sh")[0]
    assert install.startswith("cd /opt/redis/redis-7.2 && ")
    assert "export PORT=6379; " in install
    assert "export PASSWORD='p@ss word'; " in install
    assert "bad-key" not in install
    assert storage.list_steps(ctx.task.id)[-1].output == "installed\n"


def test_package_without_install_script_is_skipped(storage, settings, fake):
    ctx = make_ctx(storage, settings, fake, artifact=PackageArtifact(package_id="redis"),
                   target_path="/opt/redis", parameters={"PASSWORD": "x"})
    PackageStrategy().run(ctx)

    steps = storage.list_steps(ctx.task.id)
    assert steps[-1].action == "find install script"
    assert steps[-1].status == "skipped"
    assert not fake.ran("chmod +x")


def test_package_searches_target_when_extract_dir_missing(storage, settings, fake):
    fake.on("test -d", exit_code=1)
    ctx = make_ctx(storage, settings, fake, artifact=PackageArtifact(package_id="redis"),
                   target_path="/opt/redis", parameters={"PASSWORD": "x"})
    PackageStrategy().run(ctx)
    assert fake.ran("find /opt/redis -name '*.sh' -type f | head -1")


@pytest.mark.parametrize("file_name, extract_cmd, search_root", [
    ("app-1.0.tgz", "cd /opt/app && tar -xzf app-1.0.tgz", "/opt/app/app-1.0"),
    ("app-1.0.tar.gz", "cd /opt/app && tar -xzf app-1.0.tar.gz", "/opt/app/app-1.0"),
    ("app-1.0.zip", "cd /opt/app && unzip -o app-1.0.zip", "/opt/app"),
    ("app-1.0.bin", None, "/opt/app"),
])
def test_package_extraction_by_file_type(storage, settings, fake, tmp_path, file_name, extract_cmd, search_root):
    local = tmp_path / file_name
    local.write_bytes(b"payload")
    storage.save_package(Package(id="app", name="app", file_name=file_name, file_path=str(local)))
    ctx = make_ctx(storage, settings, fake, artifact=PackageArtifact(package_id="app"), target_path="/opt/app")

    PackageStrategy().run(ctx)

    names = [a for _, a, _ in actions(storage, ctx.task.id)]
    if extract_cmd is None:
        assert "extract package" not in names
        assert not fake.ran("tar -xzf") and not fake.ran("unzip")
    else:
        assert names[2] == "extract package"
        assert fake.ran(extract_cmd)
    assert fake.ran(f"find {search_root} -name '*.sh' -type f | head -1")
    assert bool(fake.ran("test -d")) == (search_root != "/opt/app")


def test_install_script_failure(storage, settings, fake):
    fake.on("find ", "/opt/redis/redis-7.2/install.sh\n")
    fake.on("bash /opt/redis", "boom\n", exit_code=2)
    ctx = make_ctx(storage, settings, fake, artifact=PackageArtifact(package_id="redis"),
                   target_path="/opt/redis", parameters={"PASSWORD": "x"})
    with pytest.raises(CommandError, match="exited with code 2"):
        PackageStrategy().run(ctx)
    last = storage.list_steps(ctx.task.id)[-1]
    assert (last.action, last.status, last.output) == ("run install script", "failed", "boom\n")


def test_certificate_strategy(storage, settings, fake):
    ctx = make_ctx(storage, settings, fake, artifact=CertificateArtifact(certificate_id="example"),
                   target_path="/etc/nginx/ssl")
    CertificateStrategy().run(ctx)

    assert [a for _, a, _ in actions(storage, ctx.task.id)] == [
        "create certificate directory",
        "upload certificate",
        "upload private key",
        "set file permissions",
    ]
    assert set(fake.uploads) == {"/etc/nginx/ssl/example.crt", "/etc/nginx/ssl/example.key"}
    assert fake.ran("chmod 644 /etc/nginx/ssl/example.crt && chmod 600 /etc/nginx/ssl/example.key")
