"""Tests for the app registry."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import blog_app_data

from overwatch.apps import AppRegistry, list_tenant_ids
from overwatch.config import OverwatchConfig
from overwatch.errors import ConflictError, NotFoundError, ValidationError
from overwatch.models import App
from overwatch.state import StateStore


def _make_tenant(config: OverwatchConfig, app_id: str, tenant_id: str) -> Path:
    tenant_dir = config.tenant_dir(app_id, tenant_id)
    tenant_dir.mkdir(parents=True)
    (tenant_dir / ".env").write_text(f"TENANT_ID={tenant_id}\n", encoding="utf-8")
    return tenant_dir


def test_create_and_get_app(registry: AppRegistry, store: StateStore) -> None:
    """Created apps are persisted with timestamps and readable by id."""
    app = registry.create_app(blog_app_data())

    assert app.created_at
    assert app.created_at == app.updated_at
    assert registry.app_ids() == ["blog"]
    fetched = registry.require_app("blog")
    assert fetched.to_dict() == app.to_dict()
    assert store.read_apps()[0]["id"] == "blog"


def test_create_duplicate_conflicts(registry: AppRegistry, blog_app: App) -> None:
    """Registering the same id twice is a conflict."""
    with pytest.raises(ConflictError, match="already exists"):
        registry.create_app(blog_app_data())


@pytest.mark.parametrize(
    ("existing", "candidate"), [("blog", "blog-admin"), ("shop-admin", "shop")]
)
def test_hyphen_prefixed_ids_conflict(
    registry: AppRegistry, existing: str, candidate: str
) -> None:
    """Ids that are hyphen-prefixes of each other cannot coexist."""
    registry.create_app(blog_app_data(id=existing))

    with pytest.raises(ConflictError, match="ambiguous"):
        registry.create_app(blog_app_data(id=candidate))


def test_invalid_definition_rejected_before_write(
    registry: AppRegistry, store: StateStore
) -> None:
    """Validation happens before anything is persisted."""
    with pytest.raises(ValidationError):
        registry.create_app(blog_app_data(id="Bad Id"))

    assert store.read_apps() == []


def test_require_missing_app(registry: AppRegistry) -> None:
    """Unknown apps raise NotFoundError."""
    assert registry.get_app("ghost") is None
    with pytest.raises(NotFoundError):
        registry.require_app("ghost")


def test_update_app_merges_changes(registry: AppRegistry, blog_app: App) -> None:
    """Updates merge fields, keep created_at and bump updated_at."""
    updated = registry.update_app("blog", {"name": "Blog v2", "default_image_tag": "v2"})

    assert updated.name == "Blog v2"
    assert updated.default_image_tag == "v2"
    assert updated.created_at == blog_app.created_at
    assert registry.require_app("blog").name == "Blog v2"


def test_update_app_id_is_immutable(registry: AppRegistry, blog_app: App) -> None:
    """Changing the id is refused."""
    with pytest.raises(ValidationError, match="cannot be changed"):
        registry.update_app("blog", {"id": "journal"})

    with pytest.raises(NotFoundError):
        registry.update_app("ghost", {"name": "x"})


def test_delete_app_refuses_with_tenants(
    registry: AppRegistry, blog_app: App, config: OverwatchConfig
) -> None:
    """Apps with tenants need force; tenant directories survive forced deletion."""
    tenant_dir = _make_tenant(config, "blog", "acme")

    with pytest.raises(ConflictError, match="1 tenant"):
        registry.delete_app("blog")

    registry.delete_app("blog", force=True)

    assert registry.app_ids() == []
    assert tenant_dir.is_dir()


def test_delete_missing_app(registry: AppRegistry) -> None:
    """Deleting an unknown app raises NotFoundError."""
    with pytest.raises(NotFoundError):
        registry.delete_app("ghost")


def test_list_apps_skips_invalid_entries(registry: AppRegistry, store: StateStore) -> None:
    """Malformed stored entries are skipped instead of failing the listing."""
    store.write_apps([blog_app_data(), {"id": "broken"}])

    assert [app.id for app in registry.list_apps()] == ["blog"]


def test_list_tenant_ids_requires_env_file(config: OverwatchConfig) -> None:
    """Only directories holding a .env file count as tenants."""
    _make_tenant(config, "blog", "beta")
    _make_tenant(config, "blog", "acme")
    (config.tenants_dir("blog") / "scratch").mkdir()
    (config.tenants_dir("blog") / ".hidden").mkdir()

    assert list_tenant_ids(config.apps_dir, "blog") == ["acme", "beta"]
    assert list_tenant_ids(config.apps_dir, "wiki") == []
