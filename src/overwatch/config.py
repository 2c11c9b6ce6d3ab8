"""Configuration loader for Overwatch.

Settings are layered, with each layer overriding the one before it:

1. Packaged defaults.
2. The YAML file at ``/etc/overwatch/config.yml`` or the path given by the caller.
3. ``OVERWATCH_*`` environment variables.
4. Overrides passed in by the CLI.

A double underscore in an environment key descends one level::

    export OVERWATCH_PROJECT__PREFIX=fleet
    export OVERWATCH_DATABASE__TYPE=mysql

Environment values go through ``yaml.safe_load`` so ``true`` and ``30`` arrive as
a bool and an int. Loading returns frozen dataclasses.
"""
from __future__ import annotations

import copy
import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import OverwatchError
from .exit_codes import ExitCode

ENV_PREFIX = "OVERWATCH_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_PREFIX_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")
_DB_PREFIX_RE = re.compile(r"^[a-z0-9_]+$")


class ConfigError(OverwatchError):
    """Raised when configuration parsing fails or a required value is missing."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class ProjectConfig:
    """Naming prefixes shared by every managed resource."""

    name: str = "overwatch"
    prefix: str = "overwatch"
    db_prefix: str = "overwatch"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "prefix": self.prefix, "db_prefix": self.db_prefix}


@dataclass(frozen=True)
class DatabaseConfig:
    """Shared database server that hosts one database per tenant."""

    type: str = "postgres"
    host: str = "overwatch-db"
    port: int = 5432
    root_user: str = "root"
    root_password_env: str = "DB_ROOT_PASSWORD"
    container_name: str = "overwatch-db"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "type": self.type,
            "host": self.host,
            "port": self.port,
            "root_user": self.root_user,
            "root_password_env": self.root_password_env,
            "container_name": self.container_name,
        }


@dataclass(frozen=True)
class CredentialsConfig:
    """Default lengths for generated tenant credentials."""

    db_password_length: int = 32
    jwt_secret_length: int = 64

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "db_password_length": self.db_password_length,
            "jwt_secret_length": self.jwt_secret_length,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """External binaries and the timeout applied to each invocation."""

    docker_bin: str = "docker"
    restic_bin: str = "restic"
    timeout: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "restic_bin": self.restic_bin,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class MonitorConfig:
    """Health monitor polling parameters."""

    interval: float = 10.0
    timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"interval": self.interval, "timeout": self.timeout}


@dataclass(frozen=True)
class OverwatchConfig:
    """Resolved configuration values for Overwatch."""

    config_file: Path
    data_dir: Path
    apps_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    scratch_dir: Path | None
    lock_timeout: float
    shared_network: str
    project: ProjectConfig
    database: DatabaseConfig
    credentials: CredentialsConfig
    tools: ToolsConfig
    monitor: MonitorConfig

    def tenants_dir(self, app_id: str) -> Path:
        """Return the directory holding every tenant of *app_id*."""
        return self.apps_dir / app_id / "tenants"

    def tenant_dir(self, app_id: str, tenant_id: str) -> Path:
        """Return the directory that *is* the tenant record."""
        return self.tenants_dir(app_id) / tenant_id

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "apps_dir": str(self.apps_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "scratch_dir": str(self.scratch_dir) if self.scratch_dir else None,
            "lock_timeout": self.lock_timeout,
            "shared_network": self.shared_network,
            "project": self.project.to_dict(),
            "database": self.database.to_dict(),
            "credentials": self.credentials.to_dict(),
            "tools": self.tools.to_dict(),
            "monitor": self.monitor.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/overwatch/config.yml",
    "data_dir": "/var/lib/overwatch",
    "apps_dir": "/srv/overwatch/apps",
    "logs_dir": "/var/log/overwatch",
    "runtime_dir": "/run/overwatch",
    "templates_dir": "/etc/overwatch/templates",
    "scratch_dir": None,
    "lock_timeout": 30.0,
    "project": {
        "name": "overwatch",
        "prefix": "overwatch",
        "db_prefix": "overwatch",
    },
    "database": {
        "type": "postgres",
        "host": "overwatch-db",
        "port": 5432,
        "root_user": "root",
        "root_password_env": "DB_ROOT_PASSWORD",
        "container_name": "overwatch-db",
    },
    "networking": {
        "shared_network": None,  # derived from project.prefix when absent
    },
    "credentials": {
        "db_password_length": 32,
        "jwt_secret_length": 64,
    },
    "tools": {
        "docker_bin": "docker",
        "restic_bin": "restic",
        "timeout": 120.0,
    },
    "monitor": {
        "interval": 10.0,
        "timeout": 5.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
ALLOWED_DATABASE_TYPES = {"postgres", "mysql", "mariadb"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> OverwatchConfig:
    """Load and merge configuration sources into an :class:`OverwatchConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    project = _as_dict(raw.get("project"), "project")
    prefix = str(project.get("prefix", ""))
    if not _PREFIX_RE.match(prefix):
        raise ConfigError(
            f"project.prefix must be a lowercase slug (letters, digits, hyphens). Got {prefix!r}."
        )
    db_prefix = str(project.get("db_prefix", ""))
    if not _DB_PREFIX_RE.match(db_prefix):
        raise ConfigError(
            "project.db_prefix may only contain lowercase letters, digits, and underscores."
        )

    database = _as_dict(raw.get("database"), "database")
    db_type = str(database.get("type", "postgres"))
    if db_type not in ALLOWED_DATABASE_TYPES:
        allowed = ", ".join(sorted(ALLOWED_DATABASE_TYPES))
        raise ConfigError(f"Unsupported database type '{db_type}'. Allowed: {allowed}.")


def _build_config(raw: Mapping[str, object]) -> OverwatchConfig:
    scratch_value = raw.get("scratch_dir")
    scratch_dir = _to_path(scratch_value) if scratch_value else None

    project_map = _as_dict(raw.get("project"), "project")
    project = ProjectConfig(
        name=str(project_map.get("name", "overwatch")),
        prefix=str(project_map.get("prefix", "overwatch")),
        db_prefix=str(project_map.get("db_prefix", "overwatch")),
    )

    database_map = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        type=str(database_map.get("type", "postgres")),
        host=str(database_map.get("host", "overwatch-db")),
        port=_expect_int(database_map.get("port"), "database.port", default=5432),
        root_user=str(database_map.get("root_user", "root")),
        root_password_env=str(database_map.get("root_password_env", "DB_ROOT_PASSWORD")),
        container_name=str(database_map.get("container_name", "overwatch-db")),
    )

    networking_map = _as_dict(raw.get("networking"), "networking")
    shared_network_value = networking_map.get("shared_network")
    shared_network = (
        str(shared_network_value) if shared_network_value else f"{project.prefix}-network"
    )

    credentials_map = _as_dict(raw.get("credentials"), "credentials")
    credentials = CredentialsConfig(
        db_password_length=_expect_positive_int(
            credentials_map.get("db_password_length"),
            "credentials.db_password_length",
            default=32,
        ),
        jwt_secret_length=_expect_positive_int(
            credentials_map.get("jwt_secret_length"),
            "credentials.jwt_secret_length",
            default=64,
        ),
    )

    tools_map = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(
        docker_bin=str(tools_map.get("docker_bin", "docker")),
        restic_bin=str(tools_map.get("restic_bin", "restic")),
        timeout=_expect_positive_float(tools_map.get("timeout"), "tools.timeout", default=120.0),
    )

    monitor_map = _as_dict(raw.get("monitor"), "monitor")
    monitor = MonitorConfig(
        interval=_expect_positive_float(
            monitor_map.get("interval"), "monitor.interval", default=10.0
        ),
        timeout=_expect_positive_float(monitor_map.get("timeout"), "monitor.timeout", default=5.0),
    )

    return OverwatchConfig(
        config_file=_to_path(raw.get("config_file")),
        data_dir=_to_path(raw.get("data_dir")),
        apps_dir=_to_path(raw.get("apps_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        scratch_dir=scratch_dir,
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        shared_network=shared_network,
        project=project,
        database=database,
        credentials=credentials,
        tools=tools,
        monitor=monitor,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    tree: dict[str, object] = {}
    for name, raw in sorted(env.items()):
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node: dict[str, object] = tree
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"Environment variable {name} conflicts with a value at {'.'.join(path)}."
                )
            node = child
        node[path[-1]] = _coerce_value(raw)
    return tree


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(current, _as_dict(value, key))
        else:
            target[key] = value


def _coerce_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError(f"{label} must be an integer. Got {value!r}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    result = _expect_int(value, label, default=default)
    if result <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {result}.")
    return result


def _expect_str(value: object, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string. Got {value!r}.")
    return value


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError:
            numeric = None
    if numeric is None:
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def require_env(env: Mapping[str, str], name: str, *, purpose: str) -> str:
    """Return ``env[name]`` or raise :class:`ConfigError` naming *purpose*."""
    value = env.get(name)
    if not value:
        raise ConfigError(f"Environment variable {name} ({purpose}) is not set.")
    return value


__all__ = [
    "ConfigError",
    "CredentialsConfig",
    "DatabaseConfig",
    "MonitorConfig",
    "OverwatchConfig",
    "ProjectConfig",
    "ToolsConfig",
    "load_config",
    "require_env",
]
