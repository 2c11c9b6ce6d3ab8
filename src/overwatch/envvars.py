"""Layered environment variables: global per app, overridden per tenant.

Global variables live in ``env-vars.json`` keyed by app id; tenant overrides
live in ``tenant-env-overrides.json``. A tenant's effective environment is the
global list with matching overrides substituted (``source="override"``)
followed by overrides with no global counterpart (``source="tenant-only"``).
The effective list is written to the tenant's ``shared.env`` after every
mutation so containers pick it up on their next restart.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .apps import AppRegistry, list_tenant_ids
from .envfile import SHARED_ENV_FILE_NAME, render_env, write_text_atomic
from .errors import NotFoundError, ValidationError
from .locking import LockManager
from .models import EffectiveEnvVar, EnvVar, OverrideEntry, TenantEnvOverride, utc_now
from .state import StateStore
from .validators import validate_tenant_id

LOGGER = logging.getLogger(__name__)

ENV_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")

# Identifiers Overwatch writes into every tenant's .env itself.
CORE_KEYS = frozenset(
    {
        "APP_ID",
        "TENANT_ID",
        "TENANT_DOMAIN",
        "IMAGE_REGISTRY",
        "IMAGE_REPOSITORY",
        "IMAGE_TAG",
        "PROJECT_PREFIX",
        "SHARED_NETWORK",
        "DB_HOST",
        "DB_PORT",
        "DB_NAME",
        "DB_USER",
        "DB_PASSWORD",
        "JWT_SECRET",
        "JWT_EXPIRES_IN",
        "NODE_ENV",
        "PORT",
        "FRONTEND_URL",
        "BACKEND_URL",
        "GITHUB_REPO",
    }
)

# Variables that change how interpreters, linkers, or shells inside the container behave.
RUNTIME_KEYS = frozenset(
    {
        "PATH",
        "HOME",
        "SHELL",
        "IFS",
        "ENV",
        "BASH_ENV",
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "NODE_OPTIONS",
        "NODE_PATH",
        "PYTHONPATH",
        "PYTHONHOME",
        "PYTHONSTARTUP",
        "PERL5LIB",
        "PERL5OPT",
        "RUBYLIB",
        "RUBYOPT",
        "JAVA_TOOL_OPTIONS",
        "_JAVA_OPTIONS",
    }
)

PROTECTED_KEYS = CORE_KEYS | RUNTIME_KEYS

SHARED_ENV_HEADER = (
    "Shared environment variables",
    "Generated by Overwatch",
    "Do not edit manually - managed via Overwatch admin panel",
    "",
)


def validate_key(key: str) -> str:
    """Validate a user-supplied variable name."""
    candidate = (key or "").strip()
    if not ENV_KEY_RE.match(candidate):
        raise ValidationError(
            f"Invalid key '{key}': must be uppercase letters, digits, and underscores, "
            "starting with a letter."
        )
    if candidate in PROTECTED_KEYS:
        raise ValidationError(f"Key '{candidate}' is protected and cannot be set.")
    return candidate


def validate_value(value: str) -> str:
    """Reject values that would break the line-oriented env file format."""
    if "\n" in value or "\r" in value or "\x00" in value:
        raise ValidationError("Values must not contain newlines or NUL characters.")
    return value


def render_shared_env(effective: Sequence[EffectiveEnvVar]) -> str:
    """Render the ``shared.env`` content for an effective variable list."""
    return render_env([(item.key, item.value) for item in effective], header=SHARED_ENV_HEADER)


@dataclass(slots=True)
class EnvMutation:
    """Outcome of a variable mutation."""

    key: str
    action: str
    regenerated: int


class EnvVarResolver:
    """Two-layer variable store and ``shared.env`` generator."""

    def __init__(
        self,
        store: StateStore,
        locks: LockManager,
        apps: AppRegistry,
        apps_dir: Path,
    ) -> None:
        """Bind the resolver to its stores."""
        self.store = store
        self.locks = locks
        self.apps = apps
        self.apps_dir = apps_dir

    # ------------------------------------------------------------------
    # Global variables
    # ------------------------------------------------------------------
    def list_env_vars(self, app_id: str) -> list[EnvVar]:
        """Return the global variables of *app_id*."""
        return [EnvVar.from_dict(entry) for entry in self.store.read_env_vars().get(app_id, [])]

    def set_env_var(
        self,
        app_id: str,
        key: str,
        value: str,
        *,
        sensitive: bool = False,
        description: str | None = None,
    ) -> EnvMutation:
        """Create or update a global variable and regenerate every tenant's file."""
        key = validate_key(key)
        value = validate_value(value)
        self.apps.require_app(app_id)
        with self.locks.env_vars_lock():
            data = self.store.read_env_vars()
            variables = [EnvVar.from_dict(entry) for entry in data.get(app_id, [])]
            now = utc_now()
            existing = next((item for item in variables if item.key == key), None)
            if existing is None:
                variables.append(
                    EnvVar(
                        key=key,
                        value=value,
                        sensitive=sensitive,
                        description=description,
                        created_at=now,
                        updated_at=now,
                    )
                )
                action = "created"
            else:
                existing.value = value
                existing.sensitive = sensitive
                if description is not None:
                    existing.description = description
                existing.updated_at = now
                action = "updated"
            data[app_id] = [item.to_dict() for item in variables]
            self.store.write_env_vars(data)
        return EnvMutation(key=key, action=action, regenerated=self.regenerate_all(app_id))

    def delete_env_var(self, app_id: str, key: str) -> EnvMutation:
        """Delete a global variable; missing keys raise :class:`NotFoundError`."""
        with self.locks.env_vars_lock():
            data = self.store.read_env_vars()
            variables = data.get(app_id, [])
            remaining = [entry for entry in variables if entry.get("key") != key]
            if len(remaining) == len(variables):
                raise NotFoundError(f"Environment variable '{key}' not found for app '{app_id}'.")
            data[app_id] = remaining
            self.store.write_env_vars(data)
        return EnvMutation(key=key, action="deleted", regenerated=self.regenerate_all(app_id))

    # ------------------------------------------------------------------
    # Tenant overrides
    # ------------------------------------------------------------------
    def get_tenant_overrides(self, app_id: str, tenant_id: str) -> list[OverrideEntry]:
        """Return the overrides recorded for one tenant."""
        record = self._find_override(self._read_overrides(app_id), tenant_id)
        return list(record.overrides) if record is not None else []

    def set_tenant_override(
        self,
        app_id: str,
        tenant_id: str,
        key: str,
        value: str,
        *,
        sensitive: bool = False,
    ) -> EnvMutation:
        """Create or update a tenant override and regenerate that tenant's file."""
        key = validate_key(key)
        value = validate_value(value)
        validate_tenant_id(tenant_id)
        if not self._tenant_dir(app_id, tenant_id).is_dir():
            raise NotFoundError(f"Tenant '{tenant_id}' of app '{app_id}' not found.")
        with self.locks.tenant_overrides_lock():
            data = self.store.read_tenant_overrides()
            records = [TenantEnvOverride.from_dict(entry) for entry in data.get(app_id, [])]
            record = self._find_override(records, tenant_id)
            if record is None:
                record = TenantEnvOverride(tenant_id=tenant_id)
                records.append(record)
            now = utc_now()
            entry = record.find(key)
            if entry is None:
                record.overrides.append(
                    OverrideEntry(key=key, value=value, sensitive=sensitive, updated_at=now)
                )
                action = "created"
            else:
                entry.value = value
                entry.sensitive = sensitive
                entry.updated_at = now
                action = "updated"
            data[app_id] = [item.to_dict() for item in records]
            self.store.write_tenant_overrides(data)
        regenerated = int(self.generate_shared_env_file(app_id, tenant_id))
        return EnvMutation(key=key, action=action, regenerated=regenerated)

    def delete_tenant_override(self, app_id: str, tenant_id: str, key: str) -> EnvMutation:
        """Remove one override; a missing tenant entry or key raises :class:`NotFoundError`."""
        with self.locks.tenant_overrides_lock():
            data = self.store.read_tenant_overrides()
            records = [TenantEnvOverride.from_dict(entry) for entry in data.get(app_id, [])]
            record = self._find_override(records, tenant_id)
            if record is None:
                raise NotFoundError(f"No overrides recorded for tenant '{tenant_id}'.")
            entry = record.find(key)
            if entry is None:
                raise NotFoundError(f"Override '{key}' not found for tenant '{tenant_id}'.")
            record.overrides.remove(entry)
            if not record.overrides:
                records.remove(record)
            data[app_id] = [item.to_dict() for item in records]
            self.store.write_tenant_overrides(data)
        regenerated = int(self.generate_shared_env_file(app_id, tenant_id))
        return EnvMutation(key=key, action="deleted", regenerated=regenerated)

    def delete_all_tenant_overrides(self, app_id: str, tenant_id: str) -> int:
        """Drop every override of one tenant; return how many were removed."""
        with self.locks.tenant_overrides_lock():
            data = self.store.read_tenant_overrides()
            records = [TenantEnvOverride.from_dict(entry) for entry in data.get(app_id, [])]
            record = self._find_override(records, tenant_id)
            if record is None:
                return 0
            records.remove(record)
            data[app_id] = [item.to_dict() for item in records]
            self.store.write_tenant_overrides(data)
        return len(record.overrides)

    # ------------------------------------------------------------------
    # Merged view and shared.env
    # ------------------------------------------------------------------
    def effective_env_vars(self, app_id: str, tenant_id: str) -> list[EffectiveEnvVar]:
        """Return the merged variables for one tenant, overrides winning."""
        overrides = {entry.key: entry for entry in self.get_tenant_overrides(app_id, tenant_id)}
        effective: list[EffectiveEnvVar] = []
        seen: set[str] = set()
        for variable in self.list_env_vars(app_id):
            if variable.key in seen:
                continue
            seen.add(variable.key)
            override = overrides.get(variable.key)
            if override is not None:
                effective.append(
                    EffectiveEnvVar(
                        key=variable.key,
                        value=override.value,
                        sensitive=override.sensitive,
                        source="override",
                        description=variable.description,
                    )
                )
            else:
                effective.append(
                    EffectiveEnvVar(
                        key=variable.key,
                        value=variable.value,
                        sensitive=variable.sensitive,
                        source="global",
                        description=variable.description,
                    )
                )
        for key, override in overrides.items():
            if key in seen:
                continue
            seen.add(key)
            effective.append(
                EffectiveEnvVar(
                    key=key,
                    value=override.value,
                    sensitive=override.sensitive,
                    source="tenant-only",
                )
            )
        return effective

    def generate_shared_env_file(self, app_id: str, tenant_id: str) -> bool:
        """Write the tenant's ``shared.env``; return ``False`` when the tenant is absent."""
        tenant_dir = self._tenant_dir(app_id, tenant_id)
        if not tenant_dir.is_dir():
            return False
        content = render_shared_env(self.effective_env_vars(app_id, tenant_id))
        path = tenant_dir / SHARED_ENV_FILE_NAME
        if path.is_symlink():
            LOGGER.warning("Replacing symlinked %s with a regular file", path)
            path.unlink()
        write_text_atomic(path, content, mode=0o640)
        return True

    def regenerate_all(self, app_id: str | None = None) -> int:
        """Regenerate ``shared.env`` for every tenant of *app_id* (or of every app)."""
        app_ids = [app_id] if app_id is not None else self.apps.app_ids()
        count = 0
        for current in app_ids:
            for tenant_id in list_tenant_ids(self.apps_dir, current):
                if self.generate_shared_env_file(current, tenant_id):
                    count += 1
        return count

    # ------------------------------------------------------------------
    def _tenant_dir(self, app_id: str, tenant_id: str) -> Path:
        return self.apps_dir / app_id / "tenants" / tenant_id

    def _read_overrides(self, app_id: str) -> list[TenantEnvOverride]:
        return [
            TenantEnvOverride.from_dict(entry)
            for entry in self.store.read_tenant_overrides().get(app_id, [])
        ]

    @staticmethod
    def _find_override(
        records: Sequence[TenantEnvOverride], tenant_id: str
    ) -> TenantEnvOverride | None:
        return next((record for record in records if record.tenant_id == tenant_id), None)


__all__ = [
    "CORE_KEYS",
    "EnvMutation",
    "EnvVarResolver",
    "PROTECTED_KEYS",
    "RUNTIME_KEYS",
    "SHARED_ENV_HEADER",
    "render_shared_env",
    "validate_key",
    "validate_value",
]
