"""Tests for layered environment variables and shared.env generation."""
from __future__ import annotations

from pathlib import Path

import pytest

from overwatch.config import OverwatchConfig
from overwatch.envfile import parse_env, render_env, replace_value
from overwatch.envvars import EnvVarResolver, validate_key, validate_value
from overwatch.errors import NotFoundError, ValidationError
from overwatch.models import App
from overwatch.state import StateStore


def _make_tenant(config: OverwatchConfig, tenant_id: str) -> Path:
    tenant_dir = config.tenant_dir("blog", tenant_id)
    tenant_dir.mkdir(parents=True)
    (tenant_dir / ".env").write_text(f"TENANT_ID={tenant_id}\n", encoding="utf-8")
    return tenant_dir


def _shared(config: OverwatchConfig, tenant_id: str) -> dict[str, str]:
    path = config.tenant_dir("blog", tenant_id) / "shared.env"
    return parse_env(path.read_text(encoding="utf-8"))


@pytest.mark.parametrize("key", ["lower", "1ABC", "WITH-DASH", "", "DB_PASSWORD", "LD_PRELOAD"])
def test_validate_key_rejects(key: str) -> None:
    """Malformed and protected keys are refused."""
    with pytest.raises(ValidationError):
        validate_key(key)


def test_validate_value_rejects_newlines() -> None:
    """Values must stay on one line."""
    assert validate_value("a=b c") == "a=b c"
    with pytest.raises(ValidationError):
        validate_value("line1\nline2")


def test_set_env_var_regenerates_every_tenant(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig, store: StateStore
) -> None:
    """Global variables land in every tenant's shared.env."""
    _make_tenant(config, "acme")
    _make_tenant(config, "beta")

    mutation = resolver.set_env_var("blog", "SMTP_HOST", "mail.example.com", description="SMTP")

    assert mutation.action == "created"
    assert mutation.regenerated == 2
    assert _shared(config, "acme") == {"SMTP_HOST": "mail.example.com"}
    assert _shared(config, "beta") == {"SMTP_HOST": "mail.example.com"}
    assert store.read_env_vars()["blog"][0]["description"] == "SMTP"

    again = resolver.set_env_var("blog", "SMTP_HOST", "smtp.example.com", sensitive=True)
    assert again.action == "updated"
    (variable,) = resolver.list_env_vars("blog")
    assert variable.sensitive is True
    assert variable.description == "SMTP"


def test_set_env_var_requires_known_app(resolver: EnvVarResolver) -> None:
    """Variables can only be attached to registered apps."""
    with pytest.raises(NotFoundError):
        resolver.set_env_var("ghost", "SMTP_HOST", "x")


def test_variables_are_scoped_per_app(resolver: EnvVarResolver, blog_app: App) -> None:
    """Each app keeps its own global list."""
    resolver.set_env_var("blog", "FEATURE_FLAG", "on")

    assert [item.key for item in resolver.list_env_vars("blog")] == ["FEATURE_FLAG"]
    assert resolver.list_env_vars("wiki") == []


def test_delete_env_var(resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig) -> None:
    """Deleting removes the variable from every shared.env."""
    _make_tenant(config, "acme")
    resolver.set_env_var("blog", "SMTP_HOST", "mail")

    mutation = resolver.delete_env_var("blog", "SMTP_HOST")

    assert mutation.action == "deleted"
    assert _shared(config, "acme") == {}
    with pytest.raises(NotFoundError):
        resolver.delete_env_var("blog", "SMTP_HOST")


def test_effective_env_merges_overrides(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig
) -> None:
    """Overrides replace globals in place; tenant-only keys follow."""
    _make_tenant(config, "acme")
    _make_tenant(config, "beta")
    resolver.set_env_var("blog", "SMTP_HOST", "mail")
    resolver.set_env_var("blog", "LOG_LEVEL", "info")

    resolver.set_tenant_override("blog", "acme", "LOG_LEVEL", "debug")
    resolver.set_tenant_override("blog", "acme", "API_TOKEN", "t0k", sensitive=True)

    effective = resolver.effective_env_vars("blog", "acme")
    assert [(item.key, item.value, item.source) for item in effective] == [
        ("SMTP_HOST", "mail", "global"),
        ("LOG_LEVEL", "debug", "override"),
        ("API_TOKEN", "t0k", "tenant-only"),
    ]
    assert effective[2].sensitive is True
    assert _shared(config, "acme") == {
        "SMTP_HOST": "mail",
        "LOG_LEVEL": "debug",
        "API_TOKEN": "t0k",
    }
    assert _shared(config, "beta") == {"SMTP_HOST": "mail", "LOG_LEVEL": "info"}


def test_override_requires_existing_tenant(resolver: EnvVarResolver, blog_app: App) -> None:
    """Overrides for unknown tenants are refused."""
    with pytest.raises(NotFoundError):
        resolver.set_tenant_override("blog", "ghost", "LOG_LEVEL", "debug")


def test_delete_tenant_override(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig
) -> None:
    """Removing an override restores the global value."""
    _make_tenant(config, "acme")
    resolver.set_env_var("blog", "LOG_LEVEL", "info")
    resolver.set_tenant_override("blog", "acme", "LOG_LEVEL", "debug")

    mutation = resolver.delete_tenant_override("blog", "acme", "LOG_LEVEL")

    assert mutation.regenerated == 1
    assert resolver.get_tenant_overrides("blog", "acme") == []
    assert _shared(config, "acme") == {"LOG_LEVEL": "info"}
    with pytest.raises(NotFoundError):
        resolver.delete_tenant_override("blog", "acme", "LOG_LEVEL")


def test_delete_all_tenant_overrides(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig
) -> None:
    """Dropping a tenant's overrides reports how many were removed."""
    _make_tenant(config, "acme")
    resolver.set_tenant_override("blog", "acme", "A_KEY", "1")
    resolver.set_tenant_override("blog", "acme", "B_KEY", "2")

    assert resolver.delete_all_tenant_overrides("blog", "acme") == 2
    assert resolver.delete_all_tenant_overrides("blog", "acme") == 0


def test_shared_env_replaces_symlink(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig, tmp_path: Path
) -> None:
    """A symlinked shared.env is replaced by a regular file."""
    tenant_dir = _make_tenant(config, "acme")
    target = tmp_path / "elsewhere.txt"
    target.write_text("untouched\n", encoding="utf-8")
    (tenant_dir / "shared.env").symlink_to(target)

    assert resolver.generate_shared_env_file("blog", "acme") is True

    assert not (tenant_dir / "shared.env").is_symlink()
    assert target.read_text(encoding="utf-8") == "untouched\n"


def test_shared_env_regeneration_is_byte_identical(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig
) -> None:
    """Regenerating without changes reproduces the same bytes."""
    tenant_dir = _make_tenant(config, "acme")
    resolver.set_env_var("blog", "SMTP_HOST", "mail.example.com")
    resolver.set_env_var("blog", "API_TOKEN", "s3cret", sensitive=True)
    resolver.set_tenant_override("blog", "acme", "SMTP_HOST", "smtp.acme.example.com")
    path = tenant_dir / "shared.env"

    assert resolver.generate_shared_env_file("blog", "acme") is True
    first = path.read_bytes()
    assert resolver.generate_shared_env_file("blog", "acme") is True

    assert path.read_bytes() == first
    assert b"smtp.acme.example.com" in first


def test_regenerate_all_counts_tenants(
    resolver: EnvVarResolver, blog_app: App, config: OverwatchConfig
) -> None:
    """Regeneration covers every tenant of every app."""
    _make_tenant(config, "acme")
    _make_tenant(config, "beta")

    assert resolver.regenerate_all() == 2
    assert resolver.generate_shared_env_file("blog", "ghost") is False


def test_env_file_helpers() -> None:
    """The env-file format skips comments and replaces values in place."""
    text = render_env({"A": "1", "B": "x=y"}, header=["Generated", ""])

    assert text == "# Generated\n\nA=1\nB=x=y\n"
    assert parse_env(text) == {"A": "1", "B": "x=y"}
    assert replace_value(text, "A", "2").splitlines()[2] == "A=2"
    assert replace_value("A=1", "C", "3") == "A=1\nC=3\n"
