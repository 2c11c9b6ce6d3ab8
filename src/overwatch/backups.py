"""Backup coordination on top of restic.

Each app with backups enabled owns one restic repository. Every snapshot is
tagged ``app:<app_id>`` and ``tenant:<tenant_id>``; listing and restore rely on
those tags for scoping. Restic's own repository lock is the only concurrency
control: lock contention is reported to the caller, never retried.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .apps import AppRegistry, list_tenant_ids
from .config import ConfigError, OverwatchConfig, require_env
from .envfile import ENV_FILE_NAME, read_env_file
from .errors import ExternalToolError, NotFoundError, OverwatchError, ValidationError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import App, BackupSnapshot, LockInfo, StepOutcome, utc_now
from .naming import container_name
from .providers.database import DatabaseAdapter
from .providers.docker import DockerRuntime
from .providers.restic import ResticClient
from .validators import validate_app_id, validate_domain, validate_snapshot_id, validate_tenant_id

LOGGER = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
DATABASE_DUMP_FILE = "database.sql"
METADATA_VERSION = "1.0"

REPOSITORY_ABSENT = "repository-absent"
REPOSITORY_LOCKED = "locked"
UNKNOWN_FAILURE = "unknown"

LOCKED_MESSAGE = "Repository is locked by another operation."

_TEMPLATE_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_PID_RE = re.compile(r"PID (\d+)")
_HOST_RE = re.compile(r"on (\S+) by")
_USER_RE = re.compile(r"by (\S+) \(UID")
_CREATED_RE = re.compile(r"(?:locked since|created at) ([0-9-]+ [0-9:]+)")
_AGE_RE = re.compile(r"(?:,\s*|\()([^,()]+?) ago")


# ----------------------------------------------------------------------
# Tool output parsing
# ----------------------------------------------------------------------
def classify_tool_error(text: str) -> str:
    """Map restic error text onto a known condition."""
    if "repository does not exist" in text or "Is there a repository at" in text:
        return REPOSITORY_ABSENT
    if "repository is already locked" in text:
        return REPOSITORY_LOCKED
    return UNKNOWN_FAILURE


def parse_lock_info(text: str) -> LockInfo | None:
    """Extract lock holder details from restic's lock error message.

    Returns ``None`` when nothing recognisable is present.
    """

    def _first(pattern: re.Pattern[str]) -> str | None:
        match = pattern.search(text)
        return match.group(1).strip() if match else None

    info = LockInfo(
        pid=_first(_PID_RE),
        host=_first(_HOST_RE),
        user=_first(_USER_RE),
        created_at=_first(_CREATED_RE),
        age=_first(_AGE_RE),
    )
    if not any(info.to_dict().values()):
        return None
    return info


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass(slots=True)
class BackupInfo:
    """Repository state for one app."""

    configured: bool
    initialized: bool
    is_locked: bool = False
    lock_info: LockInfo | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "configured": self.configured,
            "initialized": self.initialized,
            "is_locked": self.is_locked,
            "lock_info": self.lock_info.to_dict() if self.lock_info else None,
            "error": self.error,
        }


@dataclass(slots=True)
class BackupResult:
    """Outcome of a backup, restore or retention operation."""

    success: bool
    snapshot_id: str | None = None
    error: str | None = None
    is_locked: bool = False
    lock_info: LockInfo | None = None
    steps: list[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "snapshot_id": self.snapshot_id,
            "error": self.error,
            "is_locked": self.is_locked,
            "lock_info": self.lock_info.to_dict() if self.lock_info else None,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(slots=True)
class BackupAllResult:
    results: dict[str, BackupResult] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results.values() if result.success)

    @property
    def fail_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def success(self) -> bool:
        return self.fail_count == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "results": {tenant: result.to_dict() for tenant, result in self.results.items()},
        }


class BackupError(OverwatchError):
    """Raised when a read-only backup query fails; the message is deliberately generic."""

    def __init__(self, message: str, *, lock_info: LockInfo | None = None) -> None:
        super().__init__(message)
        self.lock_info = lock_info


ClientFactory = Callable[[Mapping[str, str]], ResticClient]


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------
class BackupCoordinator:
    """Run backup, restore and retention transactions for tenants."""

    def __init__(
        self,
        config: OverwatchConfig,
        apps: AppRegistry,
        database: DatabaseAdapter,
        runtime: DockerRuntime,
        logger: StructuredLogger,
        *,
        env: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Wire the coordinator; *env* supplies repository credentials."""
        self.config = config
        self.apps = apps
        self.database = database
        self.runtime = runtime
        self.logger = logger
        self.env = os.environ if env is None else env
        self._client_factory = client_factory or self._default_client

    def _default_client(self, env: Mapping[str, str]) -> ResticClient:
        return ResticClient(
            env=env,
            restic_bin=self.config.tools.restic_bin,
            timeout=self.config.tools.timeout,
        )

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------
    def repository_env(self, app: App) -> dict[str, str]:
        """Return the restic environment for *app*.

        Raises :class:`ConfigError` before any tool runs when a required
        variable is missing.
        """
        backup = app.backup
        if backup is None or not backup.enabled:
            raise ConfigError(f"Backups are not enabled for app '{app.id}'.")
        s3 = backup.s3
        if s3 is None:
            raise ConfigError(f"App '{app.id}' has no S3 backup configuration.")

        if s3.endpoint_template:
            repository = self._resolve_template(s3.endpoint_template)
        elif s3.endpoint_env and s3.bucket_env:
            endpoint = require_env(self.env, s3.endpoint_env, purpose="S3 endpoint")
            bucket = require_env(self.env, s3.bucket_env, purpose="S3 bucket")
            repository = f"s3:{endpoint}/{bucket}"
        else:
            raise ConfigError(
                f"App '{app.id}' S3 backup needs endpoint_template or endpoint_env and bucket_env."
            )

        env = {
            "RESTIC_REPOSITORY": repository,
            "RESTIC_PASSWORD": require_env(
                self.env, backup.restic_password_env, purpose="restic repository password"
            ),
        }
        if s3.access_key_env:
            env["AWS_ACCESS_KEY_ID"] = require_env(
                self.env, s3.access_key_env, purpose="S3 access key"
            )
        if s3.secret_key_env:
            env["AWS_SECRET_ACCESS_KEY"] = require_env(
                self.env, s3.secret_key_env, purpose="S3 secret key"
            )
        return env

    def _resolve_template(self, template: str) -> str:
        def _lookup(match: re.Match[str]) -> str:
            return require_env(self.env, match.group(1), purpose="backup repository template")

        return _TEMPLATE_VAR_RE.sub(_lookup, template)

    def client(self, app: App) -> ResticClient:
        return self._client_factory(self.repository_env(app))

    def get_backup_info(self, app_id: str) -> BackupInfo:
        """Probe the repository of *app_id* with a trivial read."""
        app = self.apps.require_app(validate_app_id(app_id))
        try:
            client = self.client(app)
        except ConfigError as exc:
            return BackupInfo(configured=False, initialized=False, error=str(exc))
        return self._probe(app, client)

    def _probe(self, app: App, client: ResticClient) -> BackupInfo:
        try:
            client.cat_config()
        except ExternalToolError as exc:
            kind = classify_tool_error(exc.output)
            if kind == REPOSITORY_ABSENT:
                return BackupInfo(configured=True, initialized=False)
            if kind == REPOSITORY_LOCKED:
                return BackupInfo(
                    configured=True,
                    initialized=True,
                    is_locked=True,
                    lock_info=parse_lock_info(exc.output),
                    error=LOCKED_MESSAGE,
                )
            LOGGER.error("Backup status check for %s failed: %s", app.id, exc.output or exc)
            return BackupInfo(
                configured=True,
                initialized=True,
                error="Backup repository check failed. See server logs for details.",
            )
        return BackupInfo(configured=True, initialized=True)

    def initialize_repository(self, app_id: str) -> BackupResult:
        app = self.apps.require_app(validate_app_id(app_id))
        client = self.client(app)
        with self.logger.operation("backup.init", target={"app": app.id}) as scope:
            try:
                client.init()
            except ExternalToolError as exc:
                return self._fail(scope, "Repository initialisation", exc)
            scope.success("Backup repository initialised.", changed=1)
        return BackupResult(success=True)

    def unlock_repository(self, app_id: str) -> BackupResult:
        """Remove every restic lock; only for operators who confirmed the holder is gone."""
        app = self.apps.require_app(validate_app_id(app_id))
        client = self.client(app)
        with self.logger.operation("backup.unlock", target={"app": app.id}) as scope:
            try:
                client.unlock()
            except ExternalToolError as exc:
                return self._fail(scope, "Repository unlock", exc)
            scope.success("Backup repository unlocked.", changed=1)
        return BackupResult(success=True)

    def list_snapshots(self, app_id: str, tenant_id: str | None = None) -> list[BackupSnapshot]:
        """Return snapshots of *app_id* (optionally one tenant), newest first."""
        app = self.apps.require_app(validate_app_id(app_id))
        tags = [f"app:{app.id}"]
        if tenant_id is not None:
            tags.append(f"tenant:{validate_tenant_id(tenant_id)}")
        client = self.client(app)
        info = self._probe(app, client)
        if info.is_locked:
            raise BackupError(LOCKED_MESSAGE, lock_info=info.lock_info)
        if not info.initialized:
            return []
        try:
            return client.snapshots(tags)
        except (ExternalToolError, ValueError) as exc:
            LOGGER.error("Listing snapshots for %s failed: %s", app.id, _detail(exc))
            raise BackupError("Listing snapshots failed. See server logs for details.") from exc

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------
    def create_backup(self, app_id: str, tenant_id: str) -> BackupResult:
        """Back up one tenant's database, env file and declared paths."""
        app = self.apps.require_app(validate_app_id(app_id))
        tenant_id = validate_tenant_id(tenant_id)
        tenant_dir = self.config.tenant_dir(app.id, tenant_id)
        if not (tenant_dir / ENV_FILE_NAME).is_file():
            raise NotFoundError(f"Tenant '{tenant_id}' of app '{app.id}' not found.")
        client = self.client(app)

        with self.logger.operation(
            "backup.create", target={"app": app.id, "tenant": tenant_id}
        ) as scope:
            info = self._probe(app, client)
            if info.is_locked:
                return self._locked(scope, info.lock_info)
            steps: list[StepOutcome] = []
            scratch = self._scratch_dir("backup")
            try:
                if not info.initialized:
                    client.init()
                    steps.append(StepOutcome.ok("repository.init"))
                staging = scratch / tenant_id
                staging.mkdir()
                db_name = self._database_name(app.id, tenant_id)
                self.database.dump_database(db_name, staging / DATABASE_DUMP_FILE)
                steps.append(StepOutcome.ok("database.dump", db_name))
                shutil.copy2(tenant_dir / ENV_FILE_NAME, staging / ENV_FILE_NAME)
                steps.append(StepOutcome.ok("env.copy"))
                steps.extend(self._copy_paths_out(app, tenant_id, staging))
                metadata = {
                    "timestamp": utc_now(),
                    "appId": app.id,
                    "tenants": [tenant_id],
                    "project": self.config.project.name,
                    "version": METADATA_VERSION,
                }
                (scratch / METADATA_FILE).write_text(
                    json.dumps(metadata, indent=2) + "\n", encoding="utf-8"
                )
                snapshot_id = client.backup(scratch, [f"app:{app.id}", f"tenant:{tenant_id}"])
            except ExternalToolError as exc:
                result = self._fail(scope, "Backup", exc)
                result.steps = steps
                return result
            finally:
                shutil.rmtree(scratch, ignore_errors=True)
            for step in steps:
                scope.add_step(step.name, status=step.status, detail=step.detail)
            scope.success(
                "Backup completed.",
                changed=1,
                context={"snapshot_id": snapshot_id},
            )
        LOGGER.info("Backed up %s/%s as snapshot %s", app.id, tenant_id, snapshot_id)
        return BackupResult(success=True, snapshot_id=snapshot_id, steps=steps)

    def _copy_paths_out(self, app: App, tenant_id: str, staging: Path) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        for service in app.services:
            container = container_name(self.config.project.prefix, app.id, tenant_id, service.name)
            for path in service.backup_paths:
                step = f"path.copy:{service.name}:{path.local}"
                if not self.runtime.container_exists(container):
                    outcomes.append(StepOutcome.skipped(step, "container absent"))
                    continue
                if not self.runtime.path_has_content(container, path.container):
                    outcomes.append(StepOutcome.skipped(step, "path empty"))
                    continue
                try:
                    self.runtime.copy_from(container, path.container, staging / path.local)
                except ExternalToolError as exc:
                    LOGGER.warning(
                        "Copy of %s from %s failed: %s", path.container, container, exc.output
                    )
                    outcomes.append(StepOutcome.failed(step, str(exc)))
                    continue
                outcomes.append(StepOutcome.ok(step))
        return outcomes

    def backup_all(self, app_id: str) -> BackupAllResult:
        """Back up every tenant of *app_id* sequentially."""
        app = self.apps.require_app(validate_app_id(app_id))
        summary = BackupAllResult()
        for tenant_id in list_tenant_ids(self.config.apps_dir, app.id):
            try:
                summary.results[tenant_id] = self.create_backup(app.id, tenant_id)
            except OverwatchError as exc:
                summary.results[tenant_id] = BackupResult(success=False, error=str(exc))
        return summary

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore_backup(
        self,
        app_id: str,
        snapshot_id: str,
        target_tenant_id: str,
        *,
        create_new: bool = False,
        new_domain: str | None = None,
    ) -> BackupResult:
        """Restore a snapshot into an existing tenant.

        With *create_new* the caller has provisioned the target tenant for
        *new_domain* beforehand; this method never creates tenants.
        """
        app = self.apps.require_app(validate_app_id(app_id))
        snapshot_id = validate_snapshot_id(snapshot_id)
        target_tenant_id = validate_tenant_id(target_tenant_id)
        if create_new:
            if not new_domain:
                raise ValidationError("A domain is required when restoring into a new tenant.")
            new_domain = validate_domain(new_domain)
        if not (self.config.tenant_dir(app.id, target_tenant_id) / ENV_FILE_NAME).is_file():
            raise NotFoundError(
                f"Tenant '{target_tenant_id}' of app '{app.id}' not found. "
                "Create it before restoring."
            )
        client = self.client(app)

        with self.logger.operation(
            "backup.restore",
            args={"snapshot": snapshot_id, "create_new": create_new, "domain": new_domain},
            target={"app": app.id, "tenant": target_tenant_id},
        ) as scope:
            info = self._probe(app, client)
            if info.is_locked:
                return self._locked(scope, info.lock_info)
            if not info.initialized:
                scope.error("Backup repository is not initialised.", rc=int(ExitCode.PROVIDER))
                return BackupResult(success=False, error="Backup repository is not initialised.")
            steps: list[StepOutcome] = []
            scratch = self._scratch_dir("restore")
            try:
                client.restore(snapshot_id, scratch)
                metadata_path = _find_metadata(scratch)
                if metadata_path is None:
                    message = "Invalid backup: metadata.json not found."
                    scope.error(message, rc=int(ExitCode.PROVIDER))
                    return BackupResult(success=False, error=message)
                source_tenant = self._source_tenant(metadata_path, target_tenant_id)
                source_dir = metadata_path.parent / source_tenant
                if not source_dir.is_dir():
                    raise NotFoundError(f"Backup holds no data for tenant '{source_tenant}'.")
                dump = source_dir / DATABASE_DUMP_FILE
                if not dump.is_file():
                    raise NotFoundError("Backup does not contain a database dump.")
                db_name = self._database_name(app.id, target_tenant_id)
                self.database.restore_database(db_name, dump)
                steps.append(StepOutcome.ok("database.restore", db_name))
                steps.extend(self._copy_paths_in(app, target_tenant_id, source_dir))
            except ExternalToolError as exc:
                result = self._fail(scope, "Restore", exc)
                result.steps = steps
                return result
            finally:
                shutil.rmtree(scratch, ignore_errors=True)
            for step in steps:
                scope.add_step(step.name, status=step.status, detail=step.detail)
            scope.success("Restore completed.", changed=1, context={"source": source_tenant})
        return BackupResult(success=True, snapshot_id=snapshot_id, steps=steps)

    @staticmethod
    def _source_tenant(metadata_path: Path, target_tenant_id: str) -> str:
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Backup metadata is unreadable: {exc}") from exc
        tenants = metadata.get("tenants") if isinstance(metadata, Mapping) else None
        if not isinstance(tenants, list) or not tenants:
            return target_tenant_id
        if len(tenants) == 1:
            return str(tenants[0])
        if target_tenant_id not in tenants:
            available = ", ".join(str(tenant) for tenant in tenants)
            raise NotFoundError(
                f"Tenant '{target_tenant_id}' not found in backup. Available: {available}."
            )
        return target_tenant_id

    def _copy_paths_in(self, app: App, tenant_id: str, source_dir: Path) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        for service in app.services:
            container = container_name(self.config.project.prefix, app.id, tenant_id, service.name)
            for path in service.backup_paths:
                step = f"path.restore:{service.name}:{path.local}"
                local = source_dir / path.local
                if not local.is_dir():
                    outcomes.append(StepOutcome.skipped(step, "no data in backup"))
                    continue
                if not self.runtime.container_exists(container):
                    outcomes.append(StepOutcome.skipped(step, "container absent"))
                    continue
                try:
                    self.runtime.copy_to(local, container, path.container)
                except ExternalToolError as exc:
                    LOGGER.warning(
                        "Restore of %s into %s failed: %s", path.container, container, exc.output
                    )
                    outcomes.append(StepOutcome.failed(step, str(exc)))
                    continue
                outcomes.append(StepOutcome.ok(step))
        return outcomes

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def delete_snapshot(self, app_id: str, snapshot_id: str) -> BackupResult:
        app = self.apps.require_app(validate_app_id(app_id))
        snapshot_id = validate_snapshot_id(snapshot_id)
        client = self.client(app)
        with self.logger.operation(
            "backup.delete", args={"snapshot": snapshot_id}, target={"app": app.id}
        ) as scope:
            try:
                client.forget(snapshot_id)
            except ExternalToolError as exc:
                return self._fail(scope, "Snapshot deletion", exc)
            scope.success(f"Snapshot {snapshot_id} deleted.", changed=1)
        return BackupResult(success=True, snapshot_id=snapshot_id)

    def prune_backups(
        self,
        app_id: str,
        *,
        keep_daily: int = 7,
        keep_weekly: int = 4,
        keep_monthly: int = 12,
    ) -> BackupResult:
        """Apply the retention policy to the app repository and prune data."""
        app = self.apps.require_app(validate_app_id(app_id))
        for label, value in (
            ("keep_daily", keep_daily),
            ("keep_weekly", keep_weekly),
            ("keep_monthly", keep_monthly),
        ):
            if value < 0:
                raise ValidationError(f"{label} must not be negative.")
        client = self.client(app)
        policy = {
            "keep_daily": keep_daily,
            "keep_weekly": keep_weekly,
            "keep_monthly": keep_monthly,
        }
        with self.logger.operation("backup.prune", args=policy, target={"app": app.id}) as scope:
            try:
                client.prune(**policy)
            except ExternalToolError as exc:
                return self._fail(scope, "Prune", exc)
            scope.success("Prune completed.", changed=1)
        return BackupResult(success=True)

    # ------------------------------------------------------------------
    def _scratch_dir(self, kind: str) -> Path:
        base = self.config.scratch_dir
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        return Path(
            tempfile.mkdtemp(
                prefix=f"{self.config.project.prefix}-{kind}-",
                dir=str(base) if base is not None else None,
            )
        )

    def _database_name(self, app_id: str, tenant_id: str) -> str:
        env_path = self.config.tenant_dir(app_id, tenant_id) / ENV_FILE_NAME
        recorded = read_env_file(env_path).get("DB_NAME", "")
        return recorded or self.database.database_name(app_id, tenant_id)

    @staticmethod
    def _locked(scope: OperationScope, lock_info: LockInfo | None) -> BackupResult:
        scope.error(LOCKED_MESSAGE, rc=int(ExitCode.PROVIDER))
        return BackupResult(
            success=False, error=LOCKED_MESSAGE, is_locked=True, lock_info=lock_info
        )

    @staticmethod
    def _fail(scope: OperationScope, action: str, exc: ExternalToolError) -> BackupResult:
        kind = classify_tool_error(exc.output)
        if kind == REPOSITORY_LOCKED:
            return BackupCoordinator._locked(scope, parse_lock_info(exc.output))
        LOGGER.error("%s failed: %s | %s", action, exc, exc.output)
        if kind == REPOSITORY_ABSENT:
            message = "Backup repository is not initialised."
        else:
            message = f"{action} failed. See server logs for details."
        scope.error(message, rc=int(ExitCode.PROVIDER))
        return BackupResult(success=False, error=message)


def _find_metadata(root: Path) -> Path | None:
    """Return the archive's top-level metadata file.

    Restic restores the absolute staging path, so the file sits some levels
    below *root*. Backed-up tenant paths may hold their own ``metadata.json``;
    those are always deeper than the one written next to the tenant folders.
    """
    return min(
        root.rglob(METADATA_FILE), key=lambda path: (len(path.parts), str(path)), default=None
    )


def _detail(exc: Exception) -> str:
    if isinstance(exc, ExternalToolError):
        return exc.output or str(exc)
    return str(exc)


__all__ = [
    "BackupAllResult",
    "BackupCoordinator",
    "BackupError",
    "BackupInfo",
    "BackupResult",
    "classify_tool_error",
    "parse_lock_info",
]
