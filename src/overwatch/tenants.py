"""Tenant lifecycle: create, update and delete with rollback.

A tenant is the directory ``<apps_dir>/<app_id>/tenants/<tenant_id>/`` holding
its ``.env``, ``shared.env`` and ``docker-compose.yml``. The directory is the
record: if it is missing the tenant does not exist, whatever containers may
still be running under its name.
"""
from __future__ import annotations

import base64
import logging
import re
import secrets
import shutil
from collections.abc import Callable
from pathlib import Path

from .apps import AppRegistry, list_tenant_ids
from .config import OverwatchConfig
from .envfile import (
    COMPOSE_FILE_NAME,
    ENV_FILE_NAME,
    read_env_file,
    render_env,
    replace_value,
    write_text_atomic,
)
from .envvars import EnvVarResolver
from .errors import ConflictError, NotFoundError, OverwatchError
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import App, StepOutcome, Tenant, utc_now
from .providers.compose import ComposeGenerator
from .providers.database import DatabaseAdapter
from .providers.docker import DockerRuntime
from .validators import validate_app_id, validate_domain, validate_image_tag, validate_tenant_id

LOGGER = logging.getLogger(__name__)

_CREATED_RE = re.compile(r"^# Created: (\S+)$", re.MULTILINE)


def generate_password(length: int) -> str:
    """Return a random alphanumeric string of exactly *length* characters."""
    value = ""
    while len(value) < length:
        raw = base64.b64encode(secrets.token_bytes(length)).decode("ascii")
        value += re.sub(r"[^A-Za-z0-9]", "", raw)
    return value[:length]


class TenantLifecycleManager:
    """Provision, reconfigure and remove tenants of registered apps."""

    def __init__(
        self,
        config: OverwatchConfig,
        apps: AppRegistry,
        env: EnvVarResolver,
        database: DatabaseAdapter,
        compose: ComposeGenerator,
        runtime: DockerRuntime,
        locks: LockManager,
        logger: StructuredLogger,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.config = config
        self.apps = apps
        self.env = env
        self.database = database
        self.compose = compose
        self.runtime = runtime
        self.locks = locks
        self.logger = logger

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def tenant_dir(self, app_id: str, tenant_id: str) -> Path:
        return self.config.tenant_dir(app_id, tenant_id)

    def get_tenant(self, app_id: str, tenant_id: str) -> Tenant | None:
        """Return the tenant record, or ``None`` when its directory is absent."""
        env_path = self.tenant_dir(app_id, tenant_id) / ENV_FILE_NAME
        try:
            text = env_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        values = read_env_file(env_path)
        created = _CREATED_RE.search(text)
        return Tenant(
            app_id=app_id,
            tenant_id=tenant_id,
            domain=values.get("TENANT_DOMAIN", ""),
            image_tag=values.get("IMAGE_TAG", "latest"),
            created_at=created.group(1) if created else "",
        )

    def require_tenant(self, app_id: str, tenant_id: str) -> Tenant:
        tenant = self.get_tenant(app_id, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant '{tenant_id}' of app '{app_id}' not found.")
        return tenant

    def list_tenants(self, app_id: str) -> list[Tenant]:
        """Return every tenant of *app_id* ordered by id."""
        tenants: list[Tenant] = []
        for tenant_id in list_tenant_ids(self.config.apps_dir, app_id):
            tenant = self.get_tenant(app_id, tenant_id)
            if tenant is not None:
                tenants.append(tenant)
        return tenants

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create_tenant(
        self,
        app_id: str,
        tenant_id: str,
        domain: str,
        image_tag: str | None = None,
    ) -> Tenant:
        """Provision a tenant: database first, then files, then containers.

        Any failure after the database exists removes the tenant directory
        and drops the database before the original error propagates.
        """
        tenant_id = validate_tenant_id(tenant_id)
        domain = validate_domain(domain)
        app = self.apps.require_app(validate_app_id(app_id))
        tag = validate_image_tag(image_tag or app.default_image_tag)
        tenant_dir = self.tenant_dir(app.id, tenant_id)

        with self.logger.operation(
            "tenant.create",
            args={"domain": domain, "image_tag": tag},
            target={"app": app.id, "tenant": tenant_id},
        ) as scope, self.locks.tenant_lock(app.id, tenant_id) as handle:
            scope.set_lock_wait_ms(handle.wait_ms)
            if tenant_dir.exists():
                raise ConflictError(f"Tenant '{tenant_id}' of app '{app.id}' already exists.")

            db_password = generate_password(self._credential_length(app, "db_password_length"))
            jwt_secret = generate_password(self._credential_length(app, "jwt_secret_length"))
            db_name = self.database.database_name(app.id, tenant_id)
            self.database.create_database(db_name, db_password)
            scope.add_step("database.create", detail=db_name)

            created_at = utc_now()
            try:
                tenant_dir.mkdir(parents=True)
                env_text = self._render_tenant_env(
                    app,
                    tenant_id,
                    domain,
                    tag,
                    db_name=db_name,
                    db_password=db_password,
                    jwt_secret=jwt_secret,
                    created_at=created_at,
                )
                write_text_atomic(tenant_dir / ENV_FILE_NAME, env_text, mode=0o600)
                scope.add_step("env.write")
                self.env.generate_shared_env_file(app.id, tenant_id)
                scope.add_step("shared_env.generate")
                self.compose.generate(app, tenant_id, domain, tenant_dir / COMPOSE_FILE_NAME)
                scope.add_step("compose.generate")
                self.runtime.compose_up(tenant_dir / COMPOSE_FILE_NAME)
                scope.add_step("compose.up")
            except Exception as exc:
                for outcome in self._rollback_create(tenant_dir, db_name):
                    scope.add_step(outcome.name, status=outcome.status, detail=outcome.detail)
                scope.error(f"Tenant creation failed: {exc}", rc=_exit_code(exc))
                raise

            scope.success(
                f"Tenant '{tenant_id}' created.",
                changed=1,
                context={"database": db_name, "path": str(tenant_dir)},
            )
        LOGGER.info("Created tenant %s/%s", app.id, tenant_id)
        return Tenant(
            app_id=app.id,
            tenant_id=tenant_id,
            domain=domain,
            image_tag=tag,
            created_at=created_at,
        )

    def _rollback_create(self, tenant_dir: Path, db_name: str) -> list[StepOutcome]:
        outcomes = [
            _best_effort("rollback.directory", lambda: shutil.rmtree(tenant_dir)),
            _best_effort("rollback.database", lambda: self.database.drop_database(db_name)),
        ]
        for outcome in outcomes:
            if outcome.status == "failed":
                LOGGER.error("%s failed during rollback: %s", outcome.name, outcome.detail)
        return outcomes

    def _credential_length(self, app: App, field_name: str) -> int:
        if app.credentials is not None:
            value = getattr(app.credentials, field_name)
            if value:
                return int(value)
        return int(getattr(self.config.credentials, field_name))

    def _render_tenant_env(
        self,
        app: App,
        tenant_id: str,
        domain: str,
        tag: str,
        *,
        db_name: str,
        db_password: str,
        jwt_secret: str,
        created_at: str,
    ) -> str:
        values = [
            ("APP_ID", app.id),
            ("TENANT_ID", tenant_id),
            ("TENANT_DOMAIN", domain),
            ("IMAGE_REGISTRY", app.registry.url),
            ("IMAGE_REPOSITORY", app.registry.repository),
            ("IMAGE_TAG", tag),
            ("PROJECT_PREFIX", self.config.project.prefix),
            ("DB_HOST", self.config.database.host),
            ("DB_PORT", self.config.database.port),
            ("DB_NAME", db_name),
            ("DB_USER", db_name),
            ("DB_PASSWORD", db_password),
            ("JWT_SECRET", jwt_secret),
            ("SHARED_NETWORK", self.config.shared_network),
        ]
        header = (
            f"{self.config.project.name} tenant configuration",
            f"App: {app.id}",
            f"Tenant: {tenant_id}",
            f"Created: {created_at}",
            "",
        )
        return render_env(values, header=header)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def delete_tenant(
        self, app_id: str, tenant_id: str, *, keep_data: bool = False
    ) -> list[StepOutcome]:
        """Remove a tenant; returns the outcome of each tolerated side step."""
        tenant_dir = self.tenant_dir(validate_app_id(app_id), validate_tenant_id(tenant_id))
        with self.logger.operation(
            "tenant.delete",
            args={"keep_data": keep_data},
            target={"app": app_id, "tenant": tenant_id},
        ) as scope, self.locks.tenant_lock(app_id, tenant_id) as handle:
            scope.set_lock_wait_ms(handle.wait_ms)
            if not tenant_dir.is_dir():
                raise NotFoundError(f"Tenant '{tenant_id}' of app '{app_id}' not found.")

            db_name = self._recorded_database_name(app_id, tenant_id)
            removed = self.env.delete_all_tenant_overrides(app_id, tenant_id)
            scope.add_step("overrides.clear", detail=f"{removed} removed")

            outcomes: list[StepOutcome] = []
            compose_file = tenant_dir / COMPOSE_FILE_NAME
            if compose_file.is_file():
                outcomes.append(
                    _best_effort("compose.down", lambda: self.runtime.compose_down(compose_file))
                )
            else:
                outcomes.append(StepOutcome.skipped("compose.down", "no compose file"))

            if keep_data:
                outcomes.append(StepOutcome.skipped("database.drop", "keep_data requested"))
            else:
                self.database.drop_database(db_name)
                outcomes.append(StepOutcome.ok("database.drop", db_name))

            shutil.rmtree(tenant_dir)
            outcomes.append(StepOutcome.ok("directory.remove", str(tenant_dir)))
            for outcome in outcomes:
                scope.add_step(outcome.name, status=outcome.status, detail=outcome.detail)

            failed = [outcome for outcome in outcomes if outcome.status == "failed"]
            if failed:
                scope.warning(
                    f"Tenant '{tenant_id}' deleted with warnings.",
                    warnings=[f"{outcome.name}: {outcome.detail}" for outcome in failed],
                    changed=1,
                )
            else:
                scope.success(f"Tenant '{tenant_id}' deleted.", changed=1)
        LOGGER.info("Deleted tenant %s/%s (keep_data=%s)", app_id, tenant_id, keep_data)
        return outcomes

    def _recorded_database_name(self, app_id: str, tenant_id: str) -> str:
        env_path = self.tenant_dir(app_id, tenant_id) / ENV_FILE_NAME
        try:
            recorded = read_env_file(env_path).get("DB_NAME", "")
        except FileNotFoundError:
            recorded = ""
        if recorded:
            return recorded
        LOGGER.warning("No DB_NAME recorded for %s/%s; using naming convention", app_id, tenant_id)
        return self.database.database_name(app_id, tenant_id)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def update_tenant(self, app_id: str, tenant_id: str, new_tag: str) -> Tenant:
        """Move a tenant to *new_tag*; the previous files are restored on failure."""
        new_tag = validate_image_tag(new_tag)
        tenant_dir = self.tenant_dir(validate_app_id(app_id), validate_tenant_id(tenant_id))
        env_path = tenant_dir / ENV_FILE_NAME
        compose_file = tenant_dir / COMPOSE_FILE_NAME

        with self.logger.operation(
            "tenant.update",
            args={"image_tag": new_tag},
            target={"app": app_id, "tenant": tenant_id},
        ) as scope, self.locks.tenant_lock(app_id, tenant_id) as handle:
            scope.set_lock_wait_ms(handle.wait_ms)
            if not env_path.is_file():
                raise NotFoundError(f"Tenant '{tenant_id}' of app '{app_id}' not found.")
            original_env = env_path.read_text(encoding="utf-8")
            original_compose = (
                compose_file.read_text(encoding="utf-8") if compose_file.is_file() else None
            )
            previous_tag = read_env_file(env_path).get("IMAGE_TAG", "")

            updated_env = replace_value(original_env, "IMAGE_TAG", new_tag)
            write_text_atomic(env_path, updated_env, mode=0o600)
            scope.add_step("env.update", detail=f"{previous_tag or '?'} -> {new_tag}")
            try:
                self.env.generate_shared_env_file(app_id, tenant_id)
                scope.add_step("shared_env.generate")
                self._refresh_compose(app_id, tenant_id, scope)
                self.runtime.compose_pull(compose_file)
                scope.add_step("compose.pull")
                self.runtime.compose_recreate(compose_file)
                scope.add_step("compose.recreate")
            except Exception as exc:
                write_text_atomic(env_path, original_env, mode=0o600)
                if original_compose is not None:
                    write_text_atomic(compose_file, original_compose)
                scope.add_step("env.restore", detail="previous configuration restored")
                scope.error(f"Tenant update failed: {exc}", rc=_exit_code(exc))
                raise

            scope.success(
                f"Tenant '{tenant_id}' updated to {new_tag}.",
                changed=1,
                context={"previous_tag": previous_tag},
            )
        return self.require_tenant(app_id, tenant_id)

    def _refresh_compose(self, app_id: str, tenant_id: str, scope: OperationScope) -> None:
        app = self.apps.get_app(app_id)
        tenant = self.get_tenant(app_id, tenant_id)
        if app is None or tenant is None:
            scope.add_step("compose.generate", status="skipped", detail="app definition missing")
            return
        path = self.tenant_dir(app_id, tenant_id) / COMPOSE_FILE_NAME
        changed = self.compose.generate(app, tenant_id, tenant.domain, path)
        scope.add_step("compose.generate", status="success" if changed else "unchanged")

    # ------------------------------------------------------------------
    # Runtime control
    # ------------------------------------------------------------------
    def start_tenant(self, app_id: str, tenant_id: str) -> None:
        """Create and start the tenant's containers."""
        self._compose_action("tenant.start", app_id, tenant_id, self.runtime.compose_up)

    def stop_tenant(self, app_id: str, tenant_id: str) -> None:
        """Stop and remove the tenant's containers; files and database are kept."""
        self._compose_action("tenant.stop", app_id, tenant_id, self.runtime.compose_down)

    def restart_tenant(self, app_id: str, tenant_id: str) -> None:
        """Recreate containers so changed env files take effect."""
        self._compose_action("tenant.restart", app_id, tenant_id, self.runtime.compose_recreate)

    def _compose_action(
        self,
        name: str,
        app_id: str,
        tenant_id: str,
        action: Callable[[Path], object],
    ) -> None:
        self.require_tenant(app_id, tenant_id)
        compose_file = self.tenant_dir(app_id, tenant_id) / COMPOSE_FILE_NAME
        with self.logger.operation(name, target={"app": app_id, "tenant": tenant_id}) as scope:
            action(compose_file)
            scope.success(f"{name} completed.", changed=1)


def _best_effort(name: str, action: Callable[[], object]) -> StepOutcome:
    try:
        action()
    except FileNotFoundError:
        return StepOutcome.skipped(name, "nothing to remove")
    except (OverwatchError, OSError) as exc:
        LOGGER.debug("%s failed: %s", name, getattr(exc, "output", "") or exc)
        return StepOutcome.failed(name, str(exc))
    return StepOutcome.ok(name)


def _exit_code(exc: BaseException) -> int:
    return int(getattr(exc, "exit_code", 1))


__all__ = ["TenantLifecycleManager", "generate_password"]
