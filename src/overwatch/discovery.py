"""Fleet discovery: reconcile runtime containers against declared tenants."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .apps import AppRegistry, list_tenant_ids
from .envfile import ENV_FILE_NAME, read_env_file
from .errors import NotFoundError
from .models import App, ContainerInfo
from .naming import ContainerNameParser, ParsedName, is_service_container
from .providers.docker import DockerRuntime

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TenantInfo:
    """Identity and deployment details read from a tenant's env file."""

    app_id: str
    tenant_id: str
    domain: str
    version: str

    def to_dict(self) -> dict[str, object]:
        return {
            "app_id": self.app_id,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "version": self.version,
        }


@dataclass(slots=True)
class TenantStatus:
    """Aggregated runtime view of one tenant."""

    app_id: str
    tenant_id: str
    domain: str
    version: str
    containers: list[ContainerInfo] = field(default_factory=list)
    running_containers: int = 0
    total_containers: int = 0
    healthy: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "app_id": self.app_id,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "version": self.version,
            "containers": [container.to_dict() for container in self.containers],
            "running_containers": self.running_containers,
            "total_containers": self.total_containers,
            "healthy": self.healthy,
        }


class FleetDiscovery:
    """Derive tenant membership from container names.

    Container names are the only link between runtime state and tenants;
    names that belong to no known app are left out of every result.
    """

    def __init__(
        self,
        apps: AppRegistry,
        runtime: DockerRuntime,
        prefix: str,
        apps_dir: Path,
    ) -> None:
        """Bind discovery to the registry and runtime it reconciles."""
        self.apps = apps
        self.runtime = runtime
        self.prefix = prefix
        self.apps_dir = apps_dir

    def parser(self, app_ids: list[str] | None = None) -> ContainerNameParser:
        """Return a parser over the current (or given) app ids."""
        if app_ids is None:
            app_ids = self.apps.app_ids()
        return ContainerNameParser(self.prefix, app_ids)

    def list_containers(
        self, *, running_only: bool = False
    ) -> list[tuple[ContainerInfo, ParsedName]]:
        """Return managed containers paired with their parsed identity."""
        parser = self.parser()
        managed: list[tuple[ContainerInfo, ParsedName]] = []
        for container in self.runtime.list_containers(include_stopped=not running_only):
            if running_only and not container.running:
                continue
            parsed = parser.parse(container.name)
            if not isinstance(parsed, ParsedName):
                continue
            container.app_id = parsed.app_id
            managed.append((container, parsed))
        return managed

    def tenant_containers(self, app_id: str, tenant_id: str) -> list[ContainerInfo]:
        """Return every container (running or not) of one tenant."""
        return [
            container
            for container, parsed in self.list_containers()
            if parsed.app_id == app_id and parsed.tenant_id == tenant_id
        ]

    def tenant_info(self, app_id: str, tenant_id: str) -> TenantInfo | None:
        """Return domain and image tag for a tenant, or ``None`` when it does not exist."""
        env_path = self.apps_dir / app_id / "tenants" / tenant_id / ENV_FILE_NAME
        try:
            values = read_env_file(env_path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("Cannot read %s: %s", env_path, exc)
            return None
        return TenantInfo(
            app_id=app_id,
            tenant_id=tenant_id,
            domain=values.get("TENANT_DOMAIN", "unknown"),
            version=values.get("IMAGE_TAG", "unknown"),
        )

    def tenant_status(self, app: App, tenant_id: str) -> TenantStatus:
        """Aggregate container state for one tenant of *app*."""
        info = self.tenant_info(app.id, tenant_id)
        if info is None:
            raise NotFoundError(f"Tenant '{tenant_id}' of app '{app.id}' not found.")
        containers = [
            (container, parsed)
            for container, parsed in self.list_containers()
            if parsed.app_id == app.id and parsed.tenant_id == tenant_id
        ]
        return self._status(app, info, containers)

    def list_tenant_statuses(self, app_id: str | None = None) -> list[TenantStatus]:
        """Return the status of every tenant, optionally restricted to one app."""
        apps = self.apps.list_apps()
        if app_id is not None:
            apps = [app for app in apps if app.id == app_id]
        if not apps:
            return []
        managed = self.list_containers()
        statuses: list[TenantStatus] = []
        for app in apps:
            for tenant_id in list_tenant_ids(self.apps_dir, app.id):
                info = self.tenant_info(app.id, tenant_id)
                if info is None:
                    continue
                containers = [
                    (container, parsed)
                    for container, parsed in managed
                    if parsed.app_id == app.id and parsed.tenant_id == tenant_id
                ]
                statuses.append(self._status(app, info, containers))
        return statuses

    # ------------------------------------------------------------------
    @staticmethod
    def _status(
        app: App,
        info: TenantInfo,
        containers: list[tuple[ContainerInfo, ParsedName]],
    ) -> TenantStatus:
        init_services = app.init_service_names
        counted = [
            container for container, parsed in containers if parsed.service not in init_services
        ]
        running = [container for container in counted if container.running]
        healthy = all(
            any(is_service_container(container.name, service.name) for container in running)
            for service in app.required_services
        )
        return TenantStatus(
            app_id=info.app_id,
            tenant_id=info.tenant_id,
            domain=info.domain,
            version=info.version,
            containers=[container for container, _ in containers],
            running_containers=len(running),
            total_containers=len(counted),
            healthy=healthy,
        )


__all__ = ["FleetDiscovery", "TenantInfo", "TenantStatus"]
