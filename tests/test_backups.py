"""Tests for backup coordination."""
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest
from conftest import FakeDatabase, FakeDocker, blog_app_data, read_operations, tool_error

from overwatch.apps import AppRegistry
from overwatch.backups import (
    LOCKED_MESSAGE,
    BackupCoordinator,
    BackupError,
    classify_tool_error,
    parse_lock_info,
)
from overwatch.config import ConfigError, OverwatchConfig
from overwatch.errors import ExternalToolError, NotFoundError, ValidationError
from overwatch.logging import StructuredLogger
from overwatch.models import App, BackupSnapshot

LOCK_TEXT = (
    "Fatal: unable to create lock in backend: repository is already locked by PID 1234 "
    "on backup-host by operator (UID 1000, GID 1000)\n"
    "lock was created at 2026-03-01 10:15:00 (5 minutes ago)\n"
    "storage ID 1a2b3c4d"
)
EXCLUSIVE_LOCK_TEXT = (
    "repository is already locked exclusively by PID 1234 on host1 by user "
    "(UID 0, GID 0) locked since 2024-01-01 00:00:00, 5 minutes ago"
)

BACKUP_ENV = {
    "S3_ENDPOINT": "https://s3.example.com",
    "S3_BUCKET": "blog-backups",
    "S3_ACCESS_KEY": "AKIA",
    "S3_SECRET_KEY": "secret",
    "RESTIC_PASSWORD": "hunter2",
}


class FakeRestic:
    """Scriptable stand-in for :class:`overwatch.providers.restic.ResticClient`."""

    def __init__(self) -> None:
        self.env: Mapping[str, str] = {}
        self.calls: list[str] = []
        self.probe_error: ExternalToolError | None = None
        self.errors: dict[str, ExternalToolError] = {}
        self.archived: dict[str, str] = {}
        self.archived_tags: list[str] = []
        self.snapshot_list: list[BackupSnapshot] = []
        self.restore_payload: dict[str, str] = {}

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    def cat_config(self) -> None:
        self.calls.append("cat_config")
        if self.probe_error is not None:
            raise self.probe_error

    def init(self) -> None:
        self._call("init")
        self.probe_error = None

    def unlock(self) -> None:
        self._call("unlock")

    def snapshots(self, tags: Sequence[str] = ()) -> list[BackupSnapshot]:
        self._call("snapshots")
        return [
            snapshot
            for snapshot in self.snapshot_list
            if all(tag in snapshot.tags for tag in tags)
        ]

    def backup(self, source: Path, tags: Sequence[str]) -> str:
        self._call("backup")
        self.archived = {
            str(path.relative_to(source)): path.read_text(encoding="utf-8")
            for path in sorted(source.rglob("*"))
            if path.is_file()
        }
        self.archived_tags = list(tags)
        return "abcdef0123456789"

    def restore(self, snapshot_id: str, target: Path) -> None:
        self._call("restore")
        # restic restores the absolute source path beneath the target.
        root = target / "tmp" / "overwatch-backup-x"
        for relative, content in self.restore_payload.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    def forget(self, snapshot_id: str) -> None:
        self._call(f"forget:{snapshot_id}")

    def prune(self, *, keep_daily: int, keep_weekly: int, keep_monthly: int) -> None:
        self._call(f"prune:{keep_daily}/{keep_weekly}/{keep_monthly}")


@pytest.fixture
def restic() -> FakeRestic:
    """Fake restic client."""
    return FakeRestic()


@pytest.fixture
def coordinator(
    config: OverwatchConfig,
    registry: AppRegistry,
    database: FakeDatabase,
    docker: FakeDocker,
    logger: StructuredLogger,
    restic: FakeRestic,
) -> BackupCoordinator:
    """Coordinator wired to fakes with a complete backup environment."""

    def factory(env: Mapping[str, str]) -> FakeRestic:
        restic.env = env
        return restic

    return BackupCoordinator(
        config,
        registry,
        database,
        docker,  # type: ignore[arg-type]
        logger,
        env=dict(BACKUP_ENV),
        client_factory=factory,  # type: ignore[arg-type]
    )


def _make_tenant(config: OverwatchConfig, tenant_id: str) -> Path:
    tenant_dir = config.tenant_dir("blog", tenant_id)
    tenant_dir.mkdir(parents=True)
    (tenant_dir / ".env").write_text(
        f"TENANT_ID={tenant_id}\nDB_NAME=overwatch_blog_{tenant_id}\n", encoding="utf-8"
    )
    return tenant_dir


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def test_classify_tool_error() -> None:
    """Restic messages map onto repository conditions."""
    assert classify_tool_error("Fatal: repository does not exist: unable to open") == (
        "repository-absent"
    )
    assert classify_tool_error("Is there a repository at the following location?") == (
        "repository-absent"
    )
    assert classify_tool_error(LOCK_TEXT) == "locked"
    assert classify_tool_error("permission denied") == "unknown"


def test_parse_lock_info() -> None:
    """Lock holder details are extracted from restic's message."""
    info = parse_lock_info(LOCK_TEXT)

    assert info is not None
    assert info.pid == "1234"
    assert info.host == "backup-host"
    assert info.user == "operator"
    assert info.created_at == "2026-03-01 10:15:00"
    assert info.age == "5 minutes"
    assert parse_lock_info("nothing useful here") is None


def test_parse_exclusive_lock_info() -> None:
    """The single-line exclusive lock message yields the same fields."""
    info = parse_lock_info(EXCLUSIVE_LOCK_TEXT)

    assert classify_tool_error(EXCLUSIVE_LOCK_TEXT) == "locked"
    assert info is not None
    assert info.pid == "1234"
    assert info.host == "host1"
    assert info.user == "user"
    assert info.created_at == "2024-01-01 00:00:00"
    assert info.age == "5 minutes"


# ----------------------------------------------------------------------
# Repository
# ----------------------------------------------------------------------
def test_repository_env_from_s3_settings(coordinator: BackupCoordinator, blog_app: App) -> None:
    """Repository location and credentials come from the named variables."""
    env = coordinator.repository_env(blog_app)

    assert env == {
        "RESTIC_REPOSITORY": "s3:https://s3.example.com/blog-backups",
        "RESTIC_PASSWORD": "hunter2",
        "AWS_ACCESS_KEY_ID": "AKIA",
        "AWS_SECRET_ACCESS_KEY": "secret",
    }


def test_repository_env_from_template(coordinator: BackupCoordinator) -> None:
    """Endpoint templates substitute environment variables."""
    app = App.from_dict(
        blog_app_data(
            backup={
                "provider": "s3",
                "s3": {"endpoint_template": "s3:${S3_ENDPOINT}/${S3_BUCKET}/blog"},
            }
        )
    )

    env = coordinator.repository_env(app)

    assert env["RESTIC_REPOSITORY"] == "s3:https://s3.example.com/blog-backups/blog"
    assert "AWS_ACCESS_KEY_ID" not in env


def test_missing_credentials_fail_before_tool_runs(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """A missing variable raises ConfigError and restic is never invoked."""
    coordinator.env = {key: value for key, value in BACKUP_ENV.items() if key != "S3_BUCKET"}

    with pytest.raises(ConfigError, match="S3_BUCKET"):
        coordinator.list_snapshots("blog")

    info = coordinator.get_backup_info("blog")
    assert info.configured is False
    assert "S3_BUCKET" in str(info.error)
    assert restic.calls == []


def test_backups_disabled(coordinator: BackupCoordinator, registry: AppRegistry) -> None:
    """Apps without backups enabled report as unconfigured."""
    registry.create_app(blog_app_data(id="wiki", backup={"enabled": False}))

    info = coordinator.get_backup_info("wiki")

    assert info.configured is False


def test_get_backup_info_states(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Probe results distinguish absent, locked, failed and healthy repositories."""
    assert coordinator.get_backup_info("blog").to_dict()["initialized"] is True

    restic.probe_error = tool_error("Fatal: repository does not exist")
    assert coordinator.get_backup_info("blog").initialized is False

    restic.probe_error = tool_error(LOCK_TEXT)
    locked = coordinator.get_backup_info("blog")
    assert locked.is_locked is True
    assert locked.lock_info is not None and locked.lock_info.pid == "1234"

    restic.probe_error = tool_error("s3: access denied for key AKIA")
    failed = coordinator.get_backup_info("blog")
    assert failed.error == "Backup repository check failed. See server logs for details."
    assert "AKIA" not in str(failed.to_dict())


def test_initialize_and_unlock(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Init and unlock call through to restic."""
    assert coordinator.initialize_repository("blog").success is True
    assert coordinator.unlock_repository("blog").success is True
    assert restic.calls == ["init", "unlock"]
    assert restic.env["RESTIC_PASSWORD"] == "hunter2"


def test_list_snapshots_filters_by_tags(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Snapshots are scoped by app and optionally tenant tags."""
    restic.snapshot_list = [
        BackupSnapshot(
            id="a" * 64, short_id="aaaaaaaa", time="2", tags=["app:blog", "tenant:acme"]
        ),
        BackupSnapshot(
            id="b" * 64, short_id="bbbbbbbb", time="1", tags=["app:blog", "tenant:beta"]
        ),
    ]

    assert len(coordinator.list_snapshots("blog")) == 2
    (only,) = coordinator.list_snapshots("blog", "beta")
    assert only.tenant_id == "beta"


def test_list_snapshots_on_absent_repository(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """An uninitialised repository simply has no snapshots."""
    restic.probe_error = tool_error("Fatal: repository does not exist")

    assert coordinator.list_snapshots("blog") == []
    assert "snapshots" not in restic.calls


def test_list_snapshots_reports_lock(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Lock contention surfaces as BackupError carrying the lock holder."""
    restic.probe_error = tool_error(LOCK_TEXT)

    with pytest.raises(BackupError) as excinfo:
        coordinator.list_snapshots("blog")

    assert str(excinfo.value) == LOCKED_MESSAGE
    assert excinfo.value.lock_info is not None
    assert excinfo.value.lock_info.age == "5 minutes"


def test_list_snapshots_hides_tool_output(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Unexpected failures produce a generic message."""
    restic.errors["snapshots"] = tool_error("secret endpoint https://s3.example.com leaked")

    with pytest.raises(BackupError) as excinfo:
        coordinator.list_snapshots("blog")

    assert "s3.example.com" not in str(excinfo.value)


# ----------------------------------------------------------------------
# Backup
# ----------------------------------------------------------------------
def test_create_backup_archives_tenant(
    coordinator: BackupCoordinator,
    blog_app: App,
    config: OverwatchConfig,
    docker: FakeDocker,
    restic: FakeRestic,
) -> None:
    """The archive holds metadata, dump, env file and declared paths."""
    _make_tenant(config, "acme")
    docker.existing.add("overwatch-blog-acme-api")
    docker.content[("overwatch-blog-acme-api", "/app/uploads")] = "image bytes"

    result = coordinator.create_backup("blog", "acme")

    assert result.success is True
    assert result.snapshot_id == "abcdef0123456789"
    assert sorted(restic.archived) == [
        "acme/.env",
        "acme/database.sql",
        "acme/uploads/file.txt",
        "metadata.json",
    ]
    assert restic.archived["acme/database.sql"] == "-- dump of overwatch_blog_acme\n"
    metadata = json.loads(restic.archived["metadata.json"])
    assert metadata["appId"] == "blog"
    assert metadata["tenants"] == ["acme"]
    assert metadata["version"] == "1.0"
    assert restic.archived_tags == ["app:blog", "tenant:acme"]
    assert config.scratch_dir is not None
    assert list(config.scratch_dir.iterdir()) == []
    assert read_operations(config)[-1]["result"]["context"] == {
        "snapshot_id": "abcdef0123456789"
    }


def test_create_backup_initialises_absent_repository(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """The repository is created on first backup."""
    _make_tenant(config, "acme")
    restic.probe_error = tool_error("Fatal: repository does not exist")

    result = coordinator.create_backup("blog", "acme")

    assert result.success is True
    assert restic.calls[:3] == ["cat_config", "init", "backup"]
    assert result.steps[0].name == "repository.init"


def test_create_backup_skips_absent_containers(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig
) -> None:
    """Declared paths of missing containers are skipped, not fatal."""
    _make_tenant(config, "acme")

    result = coordinator.create_backup("blog", "acme")

    statuses = {step.name: step.status for step in result.steps}
    assert statuses["path.copy:api:uploads"] == "skipped"


def test_create_backup_when_locked(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """Lock contention is reported with holder details and never retried."""
    _make_tenant(config, "acme")
    restic.probe_error = tool_error(LOCK_TEXT)

    result = coordinator.create_backup("blog", "acme")

    assert result.success is False
    assert result.is_locked is True
    assert result.lock_info is not None and result.lock_info.pid == "1234"
    assert "backup" not in restic.calls


def test_create_backup_dump_failure_is_fatal(
    coordinator: BackupCoordinator,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    restic: FakeRestic,
) -> None:
    """A failed database dump aborts the backup and cleans the scratch space."""
    _make_tenant(config, "acme")
    database.fail_dump = True

    result = coordinator.create_backup("blog", "acme")

    assert result.success is False
    assert result.error == "Backup failed. See server logs for details."
    assert "backup" not in restic.calls
    assert config.scratch_dir is not None
    assert list(config.scratch_dir.iterdir()) == []


def test_create_backup_missing_tenant(coordinator: BackupCoordinator, blog_app: App) -> None:
    """Backing up an unknown tenant raises NotFoundError."""
    with pytest.raises(NotFoundError):
        coordinator.create_backup("blog", "ghost")


def test_backup_all_collects_results(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """Every tenant is attempted and counted."""
    _make_tenant(config, "acme")
    _make_tenant(config, "beta")

    summary = coordinator.backup_all("blog")

    assert summary.success is True
    assert summary.success_count == 2
    assert sorted(summary.results) == ["acme", "beta"]
    assert summary.to_dict()["fail_count"] == 0


# ----------------------------------------------------------------------
# Restore
# ----------------------------------------------------------------------
def test_restore_into_existing_tenant(
    coordinator: BackupCoordinator,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
    restic: FakeRestic,
) -> None:
    """Restoring loads the dump and copies paths back into containers."""
    _make_tenant(config, "acme")
    docker.existing.add("overwatch-blog-acme-api")
    restic.restore_payload = {
        "metadata.json": json.dumps({"appId": "blog", "tenants": ["acme"]}),
        "acme/database.sql": "-- dump\n",
        "acme/.env": "TENANT_ID=acme\n",
        "acme/uploads/file.txt": "image bytes",
    }

    result = coordinator.restore_backup("blog", "abcdef01", "acme")

    assert result.success is True
    assert database.restored == [("overwatch_blog_acme", "-- dump\n")]
    assert docker.copied_in == [("overwatch-blog-acme-api", "/app/uploads", ["file.txt"])]
    assert config.scratch_dir is not None
    assert list(config.scratch_dir.iterdir()) == []


def test_restore_ignores_metadata_files_inside_tenant_data(
    coordinator: BackupCoordinator,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    docker: FakeDocker,
    restic: FakeRestic,
) -> None:
    """A user file named metadata.json does not replace the archive's own."""
    _make_tenant(config, "acme")
    docker.existing.add("overwatch-blog-acme-api")
    restic.restore_payload = {
        "metadata.json": json.dumps({"appId": "blog", "tenants": ["acme"]}),
        "acme/database.sql": "-- dump\n",
        "acme/uploads/metadata.json": "not json, user upload",
    }

    result = coordinator.restore_backup("blog", "abcdef01", "acme")

    assert result.success is True
    assert database.restored == [("overwatch_blog_acme", "-- dump\n")]
    assert docker.copied_in == [("overwatch-blog-acme-api", "/app/uploads", ["metadata.json"])]


def test_restore_into_clone(
    coordinator: BackupCoordinator,
    blog_app: App,
    config: OverwatchConfig,
    database: FakeDatabase,
    restic: FakeRestic,
) -> None:
    """A single-tenant backup restores into a differently named tenant."""
    _make_tenant(config, "acme-copy")
    restic.restore_payload = {
        "metadata.json": json.dumps({"appId": "blog", "tenants": ["acme"]}),
        "acme/database.sql": "-- dump\n",
    }

    result = coordinator.restore_backup(
        "blog", "abcdef01", "acme-copy", create_new=True, new_domain="copy.blog.example.com"
    )

    assert result.success is True
    assert database.restored == [("overwatch_blog_acme-copy", "-- dump\n")]
    (record,) = read_operations(config)
    assert record["args"]["create_new"] is True


def test_restore_validation(coordinator: BackupCoordinator, blog_app: App) -> None:
    """Snapshot ids, domains and target tenants are checked up front."""
    with pytest.raises(ValidationError):
        coordinator.restore_backup("blog", "not-a-snapshot", "acme")
    with pytest.raises(ValidationError, match="domain is required"):
        coordinator.restore_backup("blog", "abcdef01", "acme", create_new=True)
    with pytest.raises(NotFoundError, match="Create it before restoring"):
        coordinator.restore_backup("blog", "abcdef01", "ghost")


def test_restore_without_metadata(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """Archives lacking metadata.json are rejected."""
    _make_tenant(config, "acme")
    restic.restore_payload = {"acme/database.sql": "-- dump\n"}

    result = coordinator.restore_backup("blog", "abcdef01", "acme")

    assert result.success is False
    assert result.error == "Invalid backup: metadata.json not found."


def test_restore_without_dump(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """A missing dump is reported as not found."""
    _make_tenant(config, "acme")
    restic.restore_payload = {
        "metadata.json": json.dumps({"tenants": ["acme"]}),
        "acme/.env": "TENANT_ID=acme\n",
    }

    with pytest.raises(NotFoundError, match="database dump"):
        coordinator.restore_backup("blog", "abcdef01", "acme")


def test_restore_multi_tenant_archive_requires_member(
    coordinator: BackupCoordinator, blog_app: App, config: OverwatchConfig, restic: FakeRestic
) -> None:
    """Multi-tenant archives must contain the requested tenant."""
    _make_tenant(config, "gamma")
    restic.restore_payload = {
        "metadata.json": json.dumps({"tenants": ["acme", "beta"]}),
        "acme/database.sql": "-- dump\n",
    }

    with pytest.raises(NotFoundError, match="Available: acme, beta"):
        coordinator.restore_backup("blog", "abcdef01", "gamma")


# ----------------------------------------------------------------------
# Retention
# ----------------------------------------------------------------------
def test_delete_and_prune(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Snapshot deletion and pruning pass their arguments to restic."""
    assert coordinator.delete_snapshot("blog", "abcdef01").success is True
    assert coordinator.prune_backups("blog", keep_daily=3).success is True

    assert restic.calls == ["forget:abcdef01", "prune:3/4/12"]
    with pytest.raises(ValidationError):
        coordinator.prune_backups("blog", keep_weekly=-1)


def test_retention_failures_are_generic(
    coordinator: BackupCoordinator, blog_app: App, restic: FakeRestic
) -> None:
    """Tool failures become generic messages; locks keep their details."""
    restic.errors["forget:abcdef01"] = tool_error("Fatal: s3 bucket blog-backups unreachable")
    restic.errors["prune:7/4/12"] = tool_error(LOCK_TEXT)

    deleted = coordinator.delete_snapshot("blog", "abcdef01")
    pruned = coordinator.prune_backups("blog")

    assert deleted.error == "Snapshot deletion failed. See server logs for details."
    assert pruned.is_locked is True
    assert pruned.error == LOCKED_MESSAGE
