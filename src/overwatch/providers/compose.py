"""Compose descriptor generation for tenant container groups."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..models import App, Service
from ..naming import container_name
from ..templates import TemplateEngine

COMPOSE_TEMPLATE = "compose/docker-compose.yml.j2"


class ComposeGenerator(Protocol):
    """Write the compose descriptor that starts a tenant's containers."""

    def generate(self, app: App, tenant_id: str, domain: str, destination: Path) -> bool: ...


@dataclass(slots=True)
class TemplateComposeGenerator:
    """Render ``docker-compose.yml`` from an app's declared services."""

    templates: TemplateEngine
    prefix: str
    network: str

    def generate(self, app: App, tenant_id: str, domain: str, destination: Path) -> bool:
        """Render the descriptor to *destination*; returns whether it changed."""
        return self.templates.render_to_path(
            COMPOSE_TEMPLATE, destination, self.context(app, tenant_id, domain)
        )

    def render(self, app: App, tenant_id: str, domain: str) -> str:
        return self.templates.render_to_string(
            COMPOSE_TEMPLATE, self.context(app, tenant_id, domain)
        )

    def context(self, app: App, tenant_id: str, domain: str) -> dict[str, object]:
        # Init containers run last so long-lived services come first in the file.
        ordered = sorted(app.services, key=lambda service: service.is_init_container)
        volumes: list[str] = []
        services: list[dict[str, object]] = []
        for service in ordered:
            service_volumes = [
                f"{service.name}-{path.local}:{path.container}" for path in service.backup_paths
            ]
            volumes.extend(entry.split(":", 1)[0] for entry in service_volumes)
            services.append(
                {
                    "name": service.name,
                    "image": (
                        f"{app.registry.image_base}/{service.image_name}"
                        f":${{IMAGE_TAG:-{app.default_image_tag}}}"
                    ),
                    "container_name": container_name(self.prefix, app.id, tenant_id, service.name),
                    "restart": not service.is_init_container,
                    "command": list(service.command),
                    "environment": sorted(service.env_mapping.items()),
                    "volumes": service_volumes,
                    "healthcheck": _healthcheck(service),
                    "depends_on": list(service.depends_on),
                    "labels": _traefik_labels(app, tenant_id, domain, service),
                }
            )
        return {
            "app_id": app.id,
            "tenant_id": tenant_id,
            "network": self.network,
            "services": services,
            "volumes": volumes,
        }


def _healthcheck(service: Service) -> dict[str, str] | None:
    check = service.health_check
    if check is None or service.is_init_container:
        return None
    port = service.probe_port or 80
    if check.type == "http":
        url = f"http://localhost:{port}{check.path or '/health'}"
        test = ["CMD", "wget", "--spider", "-q", url]
    else:
        test = ["CMD-SHELL", f"nc -z localhost {port}"]
    return {"test": json.dumps(test), "interval": check.interval}


def _traefik_labels(app: App, tenant_id: str, domain: str, service: Service) -> list[str]:
    if service.is_init_container or service.ports is None:
        return []
    router = f"{app.id}-{tenant_id}-{service.name}"
    labels = [
        "traefik.enable=true",
        f"traefik.http.routers.{router}.rule=Host(`{domain}`)",
        f"traefik.http.routers.{router}.entrypoints=websecure",
        f"traefik.http.routers.{router}.tls=true",
    ]
    if app.domain_template.startswith("*."):
        base = app.domain_template[2:]
        labels.extend(
            [
                f"traefik.http.routers.{router}.tls.certresolver=letsencrypt",
                f"traefik.http.routers.{router}.tls.domains[0].main={base}",
                f"traefik.http.routers.{router}.tls.domains[0].sans=*.{base}",
            ]
        )
    else:
        labels.append(f"traefik.http.routers.{router}.tls.certresolver=letsencrypt-http")
    labels.append(
        f"traefik.http.services.{router}.loadbalancer.server.port={service.ports.internal}"
    )
    return labels


__all__ = ["COMPOSE_TEMPLATE", "ComposeGenerator", "TemplateComposeGenerator"]
