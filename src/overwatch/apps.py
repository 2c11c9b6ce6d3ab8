"""App registry backed by ``apps.json``."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .errors import ConflictError, NotFoundError, ValidationError
from .envfile import ENV_FILE_NAME
from .locking import LockManager
from .models import App, utc_now
from .state import StateStore

LOGGER = logging.getLogger(__name__)


def list_tenant_ids(apps_dir: Path, app_id: str) -> list[str]:
    """Return tenant ids of *app_id*: directories holding a tenant env file."""
    tenants_dir = apps_dir / app_id / "tenants"
    if not tenants_dir.is_dir():
        return []
    return sorted(
        entry.name
        for entry in tenants_dir.iterdir()
        if entry.is_dir() and not entry.name.startswith(".") and (entry / ENV_FILE_NAME).is_file()
    )


def _prefix_collision(candidate: str, existing: str) -> bool:
    return candidate.startswith(f"{existing}-") or existing.startswith(f"{candidate}-")


class AppRegistry:
    """CRUD over app definitions; every mutation holds the ``apps`` lock."""

    def __init__(self, store: StateStore, locks: LockManager, apps_dir: Path) -> None:
        """Bind the registry to its document store and tenant root."""
        self.store = store
        self.locks = locks
        self.apps_dir = apps_dir

    def list_apps(self) -> list[App]:
        """Return every valid app definition; malformed entries are logged and skipped."""
        apps: list[App] = []
        for entry in self.store.read_apps():
            try:
                apps.append(App.from_dict(entry))
            except ValidationError as exc:
                LOGGER.warning("Skipping invalid app definition %r: %s", entry.get("id"), exc)
        return apps

    def app_ids(self) -> list[str]:
        return [app.id for app in self.list_apps()]

    def get_app(self, app_id: str) -> App | None:
        return next((app for app in self.list_apps() if app.id == app_id), None)

    def require_app(self, app_id: str) -> App:
        """Return the app called *app_id* or raise :class:`NotFoundError`."""
        app = self.get_app(app_id)
        if app is None:
            raise NotFoundError(f"App '{app_id}' not found.")
        return app

    def create_app(self, data: Mapping[str, Any]) -> App:
        """Validate and register a new app definition."""
        app = App.from_dict(data)
        with self.locks.apps_lock():
            entries = self.store.read_apps()
            existing_ids = [str(entry.get("id", "")) for entry in entries]
            if app.id in existing_ids:
                raise ConflictError(f"App '{app.id}' already exists.")
            # Container names are split on known app ids; hyphen-prefixed ids would be ambiguous.
            clashes = sorted(other for other in existing_ids if _prefix_collision(app.id, other))
            if clashes:
                raise ConflictError(
                    f"App id '{app.id}' is ambiguous with existing app ids: {', '.join(clashes)}."
                )
            now = utc_now()
            app.created_at = now
            app.updated_at = now
            entries.append(app.to_dict())
            self.store.write_apps(entries)
        LOGGER.info("Registered app %s", app.id)
        return app

    def update_app(self, app_id: str, changes: Mapping[str, Any]) -> App:
        """Apply *changes* to an existing app; the id itself is immutable."""
        if "id" in changes and changes["id"] != app_id:
            raise ValidationError("App id cannot be changed.")
        with self.locks.apps_lock():
            entries = self.store.read_apps()
            index = next(
                (i for i, entry in enumerate(entries) if entry.get("id") == app_id),
                None,
            )
            if index is None:
                raise NotFoundError(f"App '{app_id}' not found.")
            merged = dict(entries[index])
            merged.update(changes)
            merged["id"] = app_id
            merged["created_at"] = entries[index].get("created_at", "")
            merged["updated_at"] = utc_now()
            app = App.from_dict(merged)
            entries[index] = app.to_dict()
            self.store.write_apps(entries)
        return app

    def delete_app(self, app_id: str, *, force: bool = False) -> None:
        """Remove an app; refuses while tenants exist unless *force* is set.

        Tenant directories are left in place either way.
        """
        with self.locks.apps_lock():
            entries = self.store.read_apps()
            remaining = [entry for entry in entries if entry.get("id") != app_id]
            if len(remaining) == len(entries):
                raise NotFoundError(f"App '{app_id}' not found.")
            tenants = list_tenant_ids(self.apps_dir, app_id)
            if tenants and not force:
                raise ConflictError(
                    f"App '{app_id}' has {len(tenants)} tenant(s). "
                    "Delete all tenants first or use force."
                )
            self.store.write_apps(remaining)
        LOGGER.info("Deleted app %s (force=%s)", app_id, force)


__all__ = ["AppRegistry", "list_tenant_ids"]
