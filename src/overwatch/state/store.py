"""Helpers for the JSON documents under Overwatch's data directory.

The data directory (``/var/lib/overwatch`` by default) stores three documents:

``apps.json``
    JSON array of app definitions.
``env-vars.json``
    JSON object keyed by app id, each value a list of global env vars.
``tenant-env-overrides.json``
    JSON object keyed by app id, each value a list of per-tenant overrides.

Writes are atomic (temporary file plus ``os.replace``). Callers are
responsible for holding the matching resource lock around read-modify-write
cycles.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import OverwatchError

APPS_FILE = "apps.json"
ENV_VARS_FILE = "env-vars.json"
TENANT_OVERRIDES_FILE = "tenant-env-overrides.json"


class StateStoreError(OverwatchError):
    """Raised when a state document cannot be read or written."""


@dataclass(frozen=True)
class StateStore:
    """High-level interface to the JSON documents."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the data directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named document."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a document, returning *default* when missing or empty."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return deepcopy(default)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Failed to parse state file {path}: {exc}") from exc

    def write(self, name: str, payload: object) -> None:
        """Atomically write *payload* to the given document."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_apps(self) -> list[dict[str, Any]]:
        """Return the app registry (empty list if missing or malformed)."""
        value = self.read(APPS_FILE, default=[])
        if not isinstance(value, list):
            return []
        return [dict(entry) for entry in value if isinstance(entry, Mapping)]

    def write_apps(self, apps: Sequence[Mapping[str, object]]) -> None:
        """Persist the app registry."""
        self.write(APPS_FILE, [dict(entry) for entry in apps])

    def read_env_vars(self) -> dict[str, list[dict[str, Any]]]:
        """Return global env vars keyed by app id.

        The legacy flat-array layout predates per-app scoping and cannot be
        attributed to an app, so it reads as empty.
        """
        return _keyed_lists(self.read(ENV_VARS_FILE, default={}))

    def write_env_vars(self, data: Mapping[str, Sequence[Mapping[str, object]]]) -> None:
        """Persist global env vars keyed by app id."""
        self.write(ENV_VARS_FILE, _plain_keyed_lists(data))

    def read_tenant_overrides(self) -> dict[str, list[dict[str, Any]]]:
        """Return tenant overrides keyed by app id (legacy arrays read as empty)."""
        return _keyed_lists(self.read(TENANT_OVERRIDES_FILE, default={}))

    def write_tenant_overrides(
        self, data: Mapping[str, Sequence[Mapping[str, object]]]
    ) -> None:
        """Persist tenant overrides keyed by app id."""
        self.write(TENANT_OVERRIDES_FILE, _plain_keyed_lists(data))


def _keyed_lists(raw: object) -> dict[str, list[dict[str, Any]]]:
    if not isinstance(raw, Mapping):
        return {}
    result: dict[str, list[dict[str, Any]]] = {}
    for key, entries in raw.items():
        if not isinstance(entries, list):
            continue
        result[str(key)] = [dict(entry) for entry in entries if isinstance(entry, Mapping)]
    return result


def _plain_keyed_lists(
    data: Mapping[str, Sequence[Mapping[str, object]]],
) -> dict[str, list[dict[str, object]]]:
    return {key: [dict(entry) for entry in entries] for key, entries in data.items()}


__all__ = [
    "APPS_FILE",
    "ENV_VARS_FILE",
    "StateStore",
    "StateStoreError",
    "TENANT_OVERRIDES_FILE",
]
