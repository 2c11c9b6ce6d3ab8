"""Domain records shared by the orchestration core.

App definitions are persisted as JSON using the snake_case field names of
these dataclasses; ``from_dict`` performs the structural validation needed to
keep container names parseable and backup paths safe.
"""
from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .cron import validate_cron
from .errors import ValidationError
from .validators import (
    validate_app_id,
    validate_container_path,
    validate_image_tag,
    validate_local_name,
    validate_service_name,
)

REGISTRY_TYPES = {"ghcr", "dockerhub", "ecr", "custom"}
HEALTH_CHECK_TYPES = {"http", "tcp"}
BACKUP_PROVIDERS = {"s3"}

_INTERVAL_RE = re.compile(r"^(\d+)([smh])$")
_INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600}


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def parse_interval(value: str | None, default: float = 30.0) -> float:
    """Convert ``30s`` / ``5m`` / ``1h`` into seconds, falling back to *default*."""
    if not value:
        return default
    match = _INTERVAL_RE.match(value.strip())
    if not match:
        return default
    return float(int(match.group(1)) * _INTERVAL_UNITS[match.group(2)])


def _mapping(value: object, label: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{label} must be an object.")
    return value


def _sequence(value: object, label: str) -> Sequence[Any]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationError(f"{label} must be a list.")
    return value


def _required_str(data: Mapping[str, Any], key: str, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label}.{key} is required.")
    return value.strip()


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(data: Mapping[str, Any], key: str, label: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{label}.{key} must be a positive integer.")
    return value


def _drop_none(payload: dict[str, object]) -> dict[str, object]:
    return {key: value for key, value in payload.items() if value is not None}


# ----------------------------------------------------------------------
# App definitions
# ----------------------------------------------------------------------
@dataclass(slots=True)
class PortConfig:
    """Container-internal port and optional published port."""

    internal: int
    external: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], label: str) -> PortConfig:
        internal = _optional_int(data, "internal", label)
        if internal is None:
            raise ValidationError(f"{label}.internal is required.")
        return cls(internal=internal, external=_optional_int(data, "external", label))

    def to_dict(self) -> dict[str, object]:
        return _drop_none({"internal": self.internal, "external": self.external})


@dataclass(slots=True)
class HealthCheck:
    """How the health monitor probes a service."""

    type: str = "http"
    path: str | None = None
    port: int | None = None
    interval: str = "30s"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], label: str) -> HealthCheck:
        kind = str(data.get("type", "http"))
        if kind not in HEALTH_CHECK_TYPES:
            raise ValidationError(f"{label}.type must be one of: http, tcp.")
        return cls(
            type=kind,
            path=_optional_str(data, "path"),
            port=_optional_int(data, "port", label),
            interval=str(data.get("interval") or "30s"),
        )

    @property
    def interval_seconds(self) -> float:
        return parse_interval(self.interval)

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {"type": self.type, "path": self.path, "port": self.port, "interval": self.interval}
        )


@dataclass(slots=True)
class BackupPath:
    """A container path and the archive subdirectory it is copied into."""

    container: str
    local: str

    def to_dict(self) -> dict[str, object]:
        return {"container": self.container, "local": self.local}


@dataclass(slots=True)
class ServiceBackup:
    enabled: bool = False
    paths: list[BackupPath] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], label: str) -> ServiceBackup:
        paths: list[BackupPath] = []
        for index, raw in enumerate(_sequence(data.get("paths"), f"{label}.paths")):
            entry = _mapping(raw, f"{label}.paths[{index}]")
            paths.append(
                BackupPath(
                    container=validate_container_path(str(entry.get("container", ""))),
                    local=validate_local_name(str(entry.get("local", ""))),
                )
            )
        return cls(enabled=bool(data.get("enabled", False)), paths=paths)

    def to_dict(self) -> dict[str, object]:
        return {"enabled": self.enabled, "paths": [path.to_dict() for path in self.paths]}


@dataclass(slots=True)
class Service:
    """One declared container role within an app."""

    name: str
    required: bool = False
    is_init_container: bool = False
    image_suffix: str | None = None
    ports: PortConfig | None = None
    health_check: HealthCheck | None = None
    backup: ServiceBackup | None = None
    env_mapping: dict[str, str] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    command: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], label: str) -> Service:
        name = validate_service_name(str(data.get("name", "")))
        ports_raw = data.get("ports")
        health_raw = data.get("health_check")
        backup_raw = data.get("backup")
        env_mapping = {
            str(key): str(value)
            for key, value in _mapping(data.get("env_mapping"), f"{label}.env_mapping").items()
        }
        return cls(
            name=name,
            required=bool(data.get("required", False)),
            is_init_container=bool(data.get("is_init_container", False)),
            image_suffix=_optional_str(data, "image_suffix"),
            ports=(
                PortConfig.from_dict(_mapping(ports_raw, f"{label}.ports"), f"{label}.ports")
                if ports_raw is not None
                else None
            ),
            health_check=(
                HealthCheck.from_dict(
                    _mapping(health_raw, f"{label}.health_check"), f"{label}.health_check"
                )
                if health_raw is not None
                else None
            ),
            backup=(
                ServiceBackup.from_dict(_mapping(backup_raw, f"{label}.backup"), f"{label}.backup")
                if backup_raw is not None
                else None
            ),
            env_mapping=env_mapping,
            depends_on=[
                str(item) for item in _sequence(data.get("depends_on"), f"{label}.depends_on")
            ],
            command=[str(item) for item in _sequence(data.get("command"), f"{label}.command")],
        )

    @property
    def image_name(self) -> str:
        return self.image_suffix or self.name

    @property
    def probe_port(self) -> int | None:
        """Port the health monitor connects to."""
        if self.health_check is not None and self.health_check.port is not None:
            return self.health_check.port
        if self.ports is not None:
            return self.ports.internal
        return None

    @property
    def backup_paths(self) -> list[BackupPath]:
        if self.backup is None or not self.backup.enabled:
            return []
        return list(self.backup.paths)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "required": self.required,
            "is_init_container": self.is_init_container,
            "image_suffix": self.image_suffix,
            "ports": self.ports.to_dict() if self.ports else None,
            "health_check": self.health_check.to_dict() if self.health_check else None,
            "backup": self.backup.to_dict() if self.backup else None,
        }
        if self.env_mapping:
            payload["env_mapping"] = dict(self.env_mapping)
        if self.depends_on:
            payload["depends_on"] = list(self.depends_on)
        if self.command:
            payload["command"] = list(self.command)
        return _drop_none(payload)


@dataclass(slots=True)
class RegistryConfig:
    """Where an app's images are pulled from."""

    type: str
    url: str
    repository: str
    auth: dict[str, Any] = field(default_factory=dict)
    tag_pattern: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RegistryConfig:
        kind = _required_str(data, "type", "registry")
        if kind not in REGISTRY_TYPES:
            allowed = ", ".join(sorted(REGISTRY_TYPES))
            raise ValidationError(f"registry.type must be one of: {allowed}.")
        return cls(
            type=kind,
            url=_required_str(data, "url", "registry"),
            repository=_required_str(data, "repository", "registry"),
            auth=dict(_mapping(data.get("auth"), "registry.auth")),
            tag_pattern=_optional_str(data, "tag_pattern"),
        )

    @property
    def image_base(self) -> str:
        return f"{self.url}/{self.repository}"

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "type": self.type,
                "url": self.url,
                "repository": self.repository,
                "auth": dict(self.auth),
                "tag_pattern": self.tag_pattern,
            }
        )


@dataclass(slots=True)
class S3Config:
    """Names of the environment variables that locate an S3 bucket."""

    endpoint_env: str | None = None
    endpoint_template: str | None = None
    bucket_env: str | None = None
    access_key_env: str | None = None
    secret_key_env: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> S3Config:
        return cls(
            endpoint_env=_optional_str(data, "endpoint_env"),
            endpoint_template=_optional_str(data, "endpoint_template"),
            bucket_env=_optional_str(data, "bucket_env"),
            access_key_env=_optional_str(data, "access_key_env"),
            secret_key_env=_optional_str(data, "secret_key_env"),
        )

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "endpoint_env": self.endpoint_env,
                "endpoint_template": self.endpoint_template,
                "bucket_env": self.bucket_env,
                "access_key_env": self.access_key_env,
                "secret_key_env": self.secret_key_env,
            }
        )


@dataclass(slots=True)
class AppBackupConfig:
    enabled: bool = True
    schedule: str | None = None
    provider: str = "s3"
    s3: S3Config | None = None
    restic_password_env: str = "RESTIC_PASSWORD"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AppBackupConfig:
        provider = str(data.get("provider", "s3"))
        if provider not in BACKUP_PROVIDERS:
            allowed = ", ".join(sorted(BACKUP_PROVIDERS))
            raise ValidationError(f"backup.provider must be one of: {allowed}.")
        s3_raw = data.get("s3")
        schedule = _optional_str(data, "schedule")
        return cls(
            enabled=bool(data.get("enabled", True)),
            schedule=validate_cron(schedule) if schedule is not None else None,
            provider=provider,
            s3=S3Config.from_dict(_mapping(s3_raw, "backup.s3")) if s3_raw is not None else None,
            restic_password_env=str(data.get("restic_password_env") or "RESTIC_PASSWORD"),
        )

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "enabled": self.enabled,
                "schedule": self.schedule,
                "provider": self.provider,
                "s3": self.s3.to_dict() if self.s3 else None,
                "restic_password_env": self.restic_password_env,
            }
        )


@dataclass(slots=True)
class CredentialPolicy:
    db_password_length: int | None = None
    jwt_secret_length: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CredentialPolicy:
        return cls(
            db_password_length=_optional_int(data, "db_password_length", "credentials"),
            jwt_secret_length=_optional_int(data, "jwt_secret_length", "credentials"),
        )

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "db_password_length": self.db_password_length,
                "jwt_secret_length": self.jwt_secret_length,
            }
        )


@dataclass(slots=True)
class App:
    """A declared application that tenants instantiate."""

    id: str
    name: str
    domain_template: str
    registry: RegistryConfig
    services: list[Service]
    backup: AppBackupConfig | None = None
    admin_access: dict[str, Any] | None = None
    credentials: CredentialPolicy | None = None
    default_image_tag: str = "latest"
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> App:
        """Build and validate an app definition."""
        if not isinstance(data, Mapping):
            raise ValidationError("App definition must be an object.")
        app_id = validate_app_id(str(data.get("id", "")))
        label = f"app '{app_id}'"
        services_raw = _sequence(data.get("services"), f"{label}.services")
        if not services_raw:
            raise ValidationError(f"{label} must declare at least one service.")
        services: list[Service] = []
        for index, raw in enumerate(services_raw):
            service_label = f"{label}.services[{index}]"
            services.append(Service.from_dict(_mapping(raw, service_label), service_label))
        names = [service.name for service in services]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(f"{label} declares duplicate services: {', '.join(duplicates)}.")
        for service in services:
            missing = [dep for dep in service.depends_on if dep not in names]
            if missing:
                raise ValidationError(
                    f"{label} service '{service.name}' depends on unknown services: "
                    f"{', '.join(missing)}."
                )

        backup_raw = data.get("backup")
        credentials_raw = data.get("credentials")
        admin_raw = data.get("admin_access")
        return cls(
            id=app_id,
            name=_required_str(data, "name", label),
            domain_template=_required_str(data, "domain_template", label),
            registry=RegistryConfig.from_dict(_mapping(data.get("registry"), "registry")),
            services=services,
            backup=(
                AppBackupConfig.from_dict(_mapping(backup_raw, "backup"))
                if backup_raw is not None
                else None
            ),
            admin_access=(
                dict(_mapping(admin_raw, "admin_access")) if admin_raw is not None else None
            ),
            credentials=(
                CredentialPolicy.from_dict(_mapping(credentials_raw, "credentials"))
                if credentials_raw is not None
                else None
            ),
            default_image_tag=validate_image_tag(str(data.get("default_image_tag") or "latest")),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def service(self, name: str) -> Service | None:
        """Return the service called *name*, if declared."""
        return next((service for service in self.services if service.name == name), None)

    @property
    def service_names(self) -> list[str]:
        return [service.name for service in self.services]

    @property
    def init_service_names(self) -> set[str]:
        return {service.name for service in self.services if service.is_init_container}

    @property
    def required_services(self) -> list[Service]:
        """Required, non-init services that must run for the tenant to be healthy."""
        return [
            service
            for service in self.services
            if service.required and not service.is_init_container
        ]

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "domain_template": self.domain_template,
                "registry": self.registry.to_dict(),
                "services": [service.to_dict() for service in self.services],
                "backup": self.backup.to_dict() if self.backup else None,
                "admin_access": dict(self.admin_access) if self.admin_access is not None else None,
                "credentials": self.credentials.to_dict() if self.credentials else None,
                "default_image_tag": self.default_image_tag,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )


# ----------------------------------------------------------------------
# Tenants and observed containers
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Tenant:
    """One instance of an app, identified by ``(app_id, tenant_id)``."""

    app_id: str
    tenant_id: str
    domain: str
    image_tag: str
    created_at: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "app_id": self.app_id,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "image_tag": self.image_tag,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ContainerInfo:
    """A container as reported by the runtime."""

    id: str
    name: str
    state: str
    status: str = ""
    image: str = ""
    created_at: str = ""
    app_id: str | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "status": self.status,
            "image": self.image,
            "created_at": self.created_at,
            "app_id": self.app_id,
        }


# ----------------------------------------------------------------------
# Environment variables
# ----------------------------------------------------------------------
@dataclass(slots=True)
class EnvVar:
    """A global environment variable applied to every tenant of an app."""

    key: str
    value: str
    sensitive: bool = False
    description: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EnvVar:
        return cls(
            key=str(data.get("key", "")),
            value=str(data.get("value", "")),
            sensitive=bool(data.get("sensitive", False)),
            description=_optional_str(data, "description"),
            created_at=str(data.get("createdAt") or data.get("created_at") or ""),
            updated_at=str(data.get("updatedAt") or data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, object]:
        return _drop_none(
            {
                "key": self.key,
                "value": self.value,
                "sensitive": self.sensitive,
                "description": self.description,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )


@dataclass(slots=True)
class OverrideEntry:
    key: str
    value: str
    sensitive: bool = False
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OverrideEntry:
        return cls(
            key=str(data.get("key", "")),
            value=str(data.get("value", "")),
            sensitive=bool(data.get("sensitive", False)),
            updated_at=str(data.get("updatedAt") or data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "value": self.value,
            "sensitive": self.sensitive,
            "updatedAt": self.updated_at,
        }


@dataclass(slots=True)
class TenantEnvOverride:
    """Per-tenant overrides (and tenant-only variables) for one app."""

    tenant_id: str
    overrides: list[OverrideEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TenantEnvOverride:
        entries = data.get("overrides")
        return cls(
            tenant_id=str(data.get("tenantId") or data.get("tenant_id") or ""),
            overrides=[
                OverrideEntry.from_dict(entry)
                for entry in (entries if isinstance(entries, list) else [])
                if isinstance(entry, Mapping)
            ],
        )

    def find(self, key: str) -> OverrideEntry | None:
        return next((entry for entry in self.overrides if entry.key == key), None)

    def to_dict(self) -> dict[str, object]:
        return {
            "tenantId": self.tenant_id,
            "overrides": [entry.to_dict() for entry in self.overrides],
        }


@dataclass(slots=True, frozen=True)
class EffectiveEnvVar:
    """One entry of a tenant's merged environment."""

    key: str
    value: str
    sensitive: bool
    source: str
    description: str | None = None

    def to_dict(self, *, reveal: bool = True) -> dict[str, object]:
        value = self.value if reveal or not self.sensitive else "********"
        return _drop_none(
            {
                "key": self.key,
                "value": value,
                "sensitive": self.sensitive,
                "source": self.source,
                "description": self.description,
            }
        )


# ----------------------------------------------------------------------
# Best-effort steps
# ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class StepOutcome:
    """Result of a side step whose failure the caller tolerates.

    ``status`` is ``ok``, ``skipped`` (nothing to do) or ``failed``.
    """

    name: str
    status: str
    detail: str | None = None

    @classmethod
    def ok(cls, name: str, detail: str | None = None) -> StepOutcome:
        return cls(name, "ok", detail)

    @classmethod
    def skipped(cls, name: str, detail: str | None = None) -> StepOutcome:
        return cls(name, "skipped", detail)

    @classmethod
    def failed(cls, name: str, detail: str | None = None) -> StepOutcome:
        return cls(name, "failed", detail)

    def to_dict(self) -> dict[str, object]:
        return _drop_none({"name": self.name, "status": self.status, "detail": self.detail})


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@dataclass(slots=True)
class BackupSnapshot:
    """A snapshot reported by the backup tool."""

    id: str
    short_id: str
    time: str
    hostname: str = ""
    tags: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupSnapshot:
        snapshot_id = str(data.get("id", ""))
        return cls(
            id=snapshot_id,
            short_id=str(data.get("short_id") or snapshot_id[:8]),
            time=str(data.get("time", "")),
            hostname=str(data.get("hostname", "")),
            tags=[str(tag) for tag in data.get("tags") or []],
            paths=[str(path) for path in data.get("paths") or []],
        )

    def _tag_value(self, prefix: str) -> str | None:
        for tag in self.tags:
            if tag.startswith(prefix):
                return tag[len(prefix) :]
        return None

    @property
    def app_id(self) -> str | None:
        return self._tag_value("app:")

    @property
    def tenant_id(self) -> str | None:
        return self._tag_value("tenant:")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "time": self.time,
            "hostname": self.hostname,
            "tags": list(self.tags),
            "paths": list(self.paths),
            "tenant_id": self.tenant_id,
        }


@dataclass(slots=True, frozen=True)
class LockInfo:
    """Metadata about a backup repository lock, parsed from tool output."""

    pid: str | None = None
    host: str | None = None
    user: str | None = None
    created_at: str | None = None
    age: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "host": self.host,
            "user": self.user,
            "created_at": self.created_at,
            "age": self.age,
        }


__all__ = [
    "App",
    "AppBackupConfig",
    "BackupPath",
    "BackupSnapshot",
    "ContainerInfo",
    "CredentialPolicy",
    "EffectiveEnvVar",
    "EnvVar",
    "HealthCheck",
    "LockInfo",
    "OverrideEntry",
    "PortConfig",
    "RegistryConfig",
    "S3Config",
    "Service",
    "ServiceBackup",
    "StepOutcome",
    "Tenant",
    "TenantEnvOverride",
    "parse_interval",
    "utc_now",
]
