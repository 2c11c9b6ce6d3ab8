"""Tests for the tenant lifecycle manager."""
from __future__ import annotations

import pytest
from conftest import FakeDatabase, FakeDocker, blog_app_data, read_operations

from overwatch.apps import AppRegistry
from overwatch.config import OverwatchConfig
from overwatch.envfile import parse_env
from overwatch.envvars import EnvVarResolver
from overwatch.errors import ConflictError, ExternalToolError, NotFoundError, ValidationError
from overwatch.models import App
from overwatch.tenants import TenantLifecycleManager, generate_password


def test_generate_password_is_alphanumeric() -> None:
    """Generated credentials have the exact length and no symbols."""
    for length in (1, 32, 64):
        value = generate_password(length)
        assert len(value) == length
        assert value.isalnum()


def test_create_tenant_provisions_everything(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
    resolver: EnvVarResolver,
) -> None:
    """Creation writes the env files and compose descriptor and starts containers."""
    resolver.set_env_var("blog", "SMTP_HOST", "mail")

    tenant = manager.create_tenant("blog", "acme", "Acme.Blog.Example.com")

    tenant_dir = config.tenant_dir("blog", "acme")
    env = parse_env((tenant_dir / ".env").read_text(encoding="utf-8"))
    assert env["TENANT_DOMAIN"] == "acme.blog.example.com"
    assert env["DB_NAME"] == "overwatch_blog_acme"
    assert len(env["DB_PASSWORD"]) == 32
    assert len(env["JWT_SECRET"]) == 64
    assert env["IMAGE_TAG"] == "latest"
    assert oct((tenant_dir / ".env").stat().st_mode & 0o777) == "0o600"
    assert parse_env((tenant_dir / "shared.env").read_text(encoding="utf-8")) == {
        "SMTP_HOST": "mail"
    }
    assert (tenant_dir / "docker-compose.yml").is_file()
    assert database.databases == {"overwatch_blog_acme": env["DB_PASSWORD"]}
    assert ("compose.up", str(tenant_dir / "docker-compose.yml")) in docker.calls

    assert tenant.domain == "acme.blog.example.com"
    fetched = manager.require_tenant("blog", "acme")
    assert fetched.created_at == tenant.created_at
    assert [item.tenant_id for item in manager.list_tenants("blog")] == ["acme"]

    (record,) = read_operations(config)
    assert record["operation"] == "tenant.create"
    assert [step["name"] for step in record["steps"]] == [
        "database.create",
        "env.write",
        "shared_env.generate",
        "compose.generate",
        "compose.up",
    ]


def test_app_credential_policy_overrides_defaults(
    manager: TenantLifecycleManager, registry: AppRegistry, config: OverwatchConfig
) -> None:
    """Per-app credential lengths win over the configured defaults."""
    registry.create_app(blog_app_data(credentials={"db_password_length": 20}))

    manager.create_tenant("blog", "acme", "acme.blog.example.com", image_tag="v1.2")

    env = parse_env((config.tenant_dir("blog", "acme") / ".env").read_text(encoding="utf-8"))
    assert len(env["DB_PASSWORD"]) == 20
    assert env["IMAGE_TAG"] == "v1.2"


def test_create_existing_tenant_conflicts(
    manager: TenantLifecycleManager, blog_app: App, database: FakeDatabase
) -> None:
    """A second create for the same tenant fails without touching the database."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    database.databases.clear()

    with pytest.raises(ConflictError):
        manager.create_tenant("blog", "acme", "acme.blog.example.com")

    assert database.databases == {}


@pytest.mark.parametrize(
    ("tenant_id", "domain"),
    [("Acme", "acme.blog.example.com"), ("acme", "not a domain")],
)
def test_create_validates_input(
    manager: TenantLifecycleManager, blog_app: App, tenant_id: str, domain: str
) -> None:
    """Malformed ids and domains are rejected up front."""
    with pytest.raises(ValidationError):
        manager.create_tenant("blog", tenant_id, domain)


def test_create_for_unknown_app(manager: TenantLifecycleManager) -> None:
    """Tenants can only be created for registered apps."""
    with pytest.raises(NotFoundError):
        manager.create_tenant("ghost", "acme", "acme.blog.example.com")


def test_create_rolls_back_when_containers_fail(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
) -> None:
    """A failed compose up removes the directory and drops the database."""
    docker.fail_on.add("compose.up")

    with pytest.raises(ExternalToolError):
        manager.create_tenant("blog", "acme", "acme.blog.example.com")

    assert not config.tenant_dir("blog", "acme").exists()
    assert database.databases == {}
    assert database.dropped == ["overwatch_blog_acme"]
    (record,) = read_operations(config)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 4
    statuses = {step["name"]: step["status"] for step in record["steps"]}
    assert statuses["rollback.directory"] == "ok"
    assert statuses["rollback.database"] == "ok"


def test_create_succeeds_after_rollback(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
) -> None:
    """A rolled-back tenant id can be provisioned again."""
    docker.fail_on.add("compose.up")
    with pytest.raises(ExternalToolError):
        manager.create_tenant("blog", "acme", "acme.blog.example.com")
    docker.fail_on.clear()

    tenant = manager.create_tenant("blog", "acme", "acme.blog.example.com")

    assert tenant.tenant_id == "acme"
    assert (config.tenant_dir("blog", "acme") / ".env").is_file()
    assert list(database.databases) == ["overwatch_blog_acme"]


def test_rollback_failure_does_not_mask_original_error(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
) -> None:
    """The original error propagates even when the database drop also fails."""
    docker.fail_on.add("compose.up")
    database.fail_drop = True

    with pytest.raises(ExternalToolError, match="compose.up"):
        manager.create_tenant("blog", "acme", "acme.blog.example.com")

    (record,) = read_operations(config)
    statuses = {step["name"]: step["status"] for step in record["steps"]}
    assert statuses["rollback.database"] == "failed"


def test_database_failure_leaves_nothing_behind(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
) -> None:
    """When the database cannot be created no files are written."""
    database.fail_create = True

    with pytest.raises(ExternalToolError):
        manager.create_tenant("blog", "acme", "acme.blog.example.com")

    assert not config.tenant_dir("blog", "acme").exists()


def test_delete_tenant_removes_everything(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    resolver: EnvVarResolver,
) -> None:
    """Deleting stops containers, drops the database and clears overrides."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    resolver.set_tenant_override("blog", "acme", "LOG_LEVEL", "debug")

    outcomes = manager.delete_tenant("blog", "acme")

    assert [(item.name, item.status) for item in outcomes] == [
        ("compose.down", "ok"),
        ("database.drop", "ok"),
        ("directory.remove", "ok"),
    ]
    assert not config.tenant_dir("blog", "acme").exists()
    assert database.dropped == ["overwatch_blog_acme"]
    assert resolver.get_tenant_overrides("blog", "acme") == []
    assert manager.get_tenant("blog", "acme") is None


def test_delete_keep_data_and_compose_failure(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
) -> None:
    """Keep-data skips the drop; compose failures are reported, not raised."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    docker.fail_on.add("compose.down")

    outcomes = manager.delete_tenant("blog", "acme", keep_data=True)

    statuses = {item.name: item.status for item in outcomes}
    assert statuses == {
        "compose.down": "failed",
        "database.drop": "skipped",
        "directory.remove": "ok",
    }
    assert "overwatch_blog_acme" in database.databases
    assert read_operations(config)[-1]["result"]["status"] == "warning"


def test_delete_missing_tenant(manager: TenantLifecycleManager, blog_app: App) -> None:
    """Deleting an unknown tenant raises NotFoundError."""
    with pytest.raises(NotFoundError):
        manager.delete_tenant("blog", "ghost")


def test_update_tenant_changes_tag(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    docker: FakeDocker,
) -> None:
    """Updating rewrites IMAGE_TAG only, then pulls and recreates."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    env_path = config.tenant_dir("blog", "acme") / ".env"
    before = parse_env(env_path.read_text(encoding="utf-8"))

    tenant = manager.update_tenant("blog", "acme", "v2.0")

    after = parse_env(env_path.read_text(encoding="utf-8"))
    assert tenant.image_tag == "v2.0"
    assert after == {**before, "IMAGE_TAG": "v2.0"}
    actions = [action for action, _ in docker.calls]
    assert actions[-2:] == ["compose.pull", "compose.recreate"]


def test_update_restores_files_on_failure(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    docker: FakeDocker,
) -> None:
    """A failed pull restores the previous env file."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    env_path = config.tenant_dir("blog", "acme") / ".env"
    original = env_path.read_text(encoding="utf-8")
    docker.fail_on.add("compose.pull")

    with pytest.raises(ExternalToolError):
        manager.update_tenant("blog", "acme", "v2.0")

    assert env_path.read_text(encoding="utf-8") == original
    assert read_operations(config)[-1]["result"]["status"] == "error"


def test_update_missing_tenant(manager: TenantLifecycleManager, blog_app: App) -> None:
    """Updating an unknown tenant raises NotFoundError."""
    with pytest.raises(NotFoundError):
        manager.update_tenant("blog", "ghost", "v2")


def test_runtime_controls(
    manager: TenantLifecycleManager,
    blog_app: App,
    config: OverwatchConfig,
    docker: FakeDocker,
) -> None:
    """Start, stop and restart map onto compose actions."""
    manager.create_tenant("blog", "acme", "acme.blog.example.com")
    docker.calls.clear()

    manager.stop_tenant("blog", "acme")
    manager.start_tenant("blog", "acme")
    manager.restart_tenant("blog", "acme")

    assert [action for action, _ in docker.calls] == [
        "compose.down",
        "compose.up",
        "compose.recreate",
    ]
    with pytest.raises(NotFoundError):
        manager.start_tenant("blog", "ghost")
