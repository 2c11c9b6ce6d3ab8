"""Pytest configuration helpers and shared fakes for the test suite."""

from __future__ import annotations

import copy
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from overwatch.apps import AppRegistry
from overwatch.config import OverwatchConfig, load_config
from overwatch.envvars import EnvVarResolver
from overwatch.errors import ExternalToolError
from overwatch.locking import LockManager
from overwatch.logging import StructuredLogger
from overwatch.models import App, ContainerInfo
from overwatch.providers.compose import TemplateComposeGenerator
from overwatch.state import StateStore
from overwatch.templates import TemplateEngine
from overwatch.tenants import TenantLifecycleManager

BLOG_APP: dict[str, Any] = {
    "id": "blog",
    "name": "Blog",
    "domain_template": "*.blog.example.com",
    "registry": {"type": "ghcr", "url": "ghcr.io", "repository": "acme/blog"},
    "services": [
        {
            "name": "api",
            "required": True,
            "ports": {"internal": 3000},
            "health_check": {"type": "http", "path": "/health", "interval": "30s"},
            "backup": {
                "enabled": True,
                "paths": [{"container": "/app/uploads", "local": "uploads"}],
            },
        },
        {"name": "web", "required": True, "ports": {"internal": 80}},
        {"name": "migrate", "is_init_container": True},
    ],
    "backup": {
        "enabled": True,
        "provider": "s3",
        "s3": {
            "endpoint_env": "S3_ENDPOINT",
            "bucket_env": "S3_BUCKET",
            "access_key_env": "S3_ACCESS_KEY",
            "secret_key_env": "S3_SECRET_KEY",
        },
    },
}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def blog_app_data(**changes: Any) -> dict[str, Any]:
    """Return a fresh copy of the sample app definition with *changes* applied."""
    data = copy.deepcopy(BLOG_APP)
    data.update(changes)
    return data


def tool_error(stderr: str, message: str = "restic failed (exit 1)") -> ExternalToolError:
    """Build an :class:`ExternalToolError` carrying *stderr*."""
    return ExternalToolError(message, command=["restic"], returncode=1, stderr=stderr)


class DummyResult:
    """Mimic ``subprocess.CompletedProcess`` for patched runs."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Store process outputs."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class RecordingRunner:
    """Replacement for ``subprocess.run`` that records invocations.

    Queued results are returned first; afterwards every call gets ``result``.
    """

    def __init__(self, result: DummyResult | None = None) -> None:
        """Return *result* (a success by default) once the queue is empty."""
        self.result = result or DummyResult()
        self.queue: list[DummyResult] = []
        self.calls: list[tuple[list[str], dict[str, Any]]] = []

    def __call__(self, command: list[str], **kwargs: Any) -> DummyResult:
        self.calls.append((list(command), kwargs))
        if self.queue:
            return self.queue.pop(0)
        return self.result

    @property
    def commands(self) -> list[list[str]]:
        return [command for command, _ in self.calls]


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> RecordingRunner:
    """Patch the subprocess module used by every provider."""
    recorder = RecordingRunner()
    monkeypatch.setattr("overwatch.providers.process.subprocess.run", recorder)
    return recorder


class FakeDocker:
    """In-memory stand-in for :class:`overwatch.providers.docker.DockerRuntime`."""

    def __init__(self) -> None:
        """Start with no containers and no recorded calls."""
        self.containers: list[ContainerInfo] = []
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.existing: set[str] = set()
        self.content: dict[tuple[str, str], str] = {}
        self.copied_in: list[tuple[str, str, list[str]]] = []

    def add_container(self, name: str, state: str = "running") -> ContainerInfo:
        container = ContainerInfo(id=f"id-{len(self.containers)}", name=name, state=state)
        self.containers.append(container)
        self.existing.add(name)
        return container

    def list_containers(self, *, include_stopped: bool = True) -> list[ContainerInfo]:
        self.calls.append(("list", str(include_stopped)))
        return [
            ContainerInfo(
                id=item.id,
                name=item.name,
                state=item.state,
                status=item.status,
                image=item.image,
            )
            for item in self.containers
            if include_stopped or item.running
        ]

    def _record(self, action: str, target: Path | str) -> None:
        self.calls.append((action, str(target)))
        if action in self.fail_on:
            raise ExternalToolError(f"docker {action} failed (exit 1)", stderr="boom")

    def compose_up(self, compose_file: Path) -> None:
        self._record("compose.up", compose_file)

    def compose_down(self, compose_file: Path) -> None:
        self._record("compose.down", compose_file)

    def compose_pull(self, compose_file: Path) -> None:
        self._record("compose.pull", compose_file)

    def compose_recreate(self, compose_file: Path) -> None:
        self._record("compose.recreate", compose_file)

    def container_exists(self, name: str) -> bool:
        return name in self.existing

    def path_has_content(self, container: str, path: str) -> bool:
        return (container, path) in self.content

    def copy_from(self, container: str, path: str, destination: Path) -> None:
        self._record("copy_from", f"{container}:{path}")
        destination.mkdir(parents=True, exist_ok=True)
        (destination / "file.txt").write_text(self.content[(container, path)], encoding="utf-8")

    def copy_to(self, source: Path, container: str, path: str) -> None:
        self._record("copy_to", f"{container}:{path}")
        names = sorted(entry.name for entry in source.iterdir())
        self.copied_in.append((container, path, names))


class FakeDatabase:
    """Records database provisioning calls instead of running SQL."""

    max_identifier_length = 63

    def __init__(self) -> None:
        """Start with an empty server."""
        self.databases: dict[str, str] = {}
        self.dropped: list[str] = []
        self.restored: list[tuple[str, str]] = []
        self.fail_create = False
        self.fail_drop = False
        self.fail_dump = False

    def database_name(self, app_id: str, tenant_id: str) -> str:
        return f"overwatch_{app_id}_{tenant_id}".replace("-", "_")

    def create_database(self, name: str, password: str) -> None:
        if self.fail_create:
            raise ExternalToolError("docker exec overwatch-db psql failed (exit 1)")
        self.databases[name] = password

    def drop_database(self, name: str) -> None:
        if self.fail_drop:
            raise ExternalToolError("docker exec overwatch-db psql failed (exit 1)")
        self.databases.pop(name, None)
        self.dropped.append(name)

    def dump_database(self, name: str, output_path: Path) -> None:
        if self.fail_dump:
            raise ExternalToolError("docker exec overwatch-db pg_dump failed (exit 1)")
        output_path.write_text(f"-- dump of {name}\n", encoding="utf-8")

    def restore_database(self, name: str, input_path: Path) -> None:
        self.restored.append((name, input_path.read_text(encoding="utf-8")))


def make_config(tmp_path: Path, **overrides: object) -> OverwatchConfig:
    """Return a configuration rooted entirely under *tmp_path*."""
    values: dict[str, object] = {
        "data_dir": str(tmp_path / "data"),
        "apps_dir": str(tmp_path / "apps"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "scratch_dir": str(tmp_path / "scratch"),
        "lock_timeout": 2.0,
    }
    values.update(overrides)
    return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=values)


@pytest.fixture
def config(tmp_path: Path) -> OverwatchConfig:
    """Configuration whose directories all live in the temporary path."""
    return make_config(tmp_path)


@pytest.fixture
def store(config: OverwatchConfig) -> StateStore:
    """State store for the test configuration."""
    return StateStore(config.data_dir)


@pytest.fixture
def locks(config: OverwatchConfig) -> LockManager:
    """Lock manager writing lock files under the runtime directory."""
    return LockManager(config.runtime_dir, default_timeout=2.0)


@pytest.fixture
def logger(config: OverwatchConfig) -> StructuredLogger:
    """Structured logger writing to the test logs directory."""
    return StructuredLogger(config.logs_dir)


@pytest.fixture
def registry(store: StateStore, locks: LockManager, config: OverwatchConfig) -> AppRegistry:
    """App registry with no apps."""
    return AppRegistry(store, locks, config.apps_dir)


@pytest.fixture
def blog_app(registry: AppRegistry) -> App:
    """Register and return the sample ``blog`` app."""
    return registry.create_app(blog_app_data())


@pytest.fixture
def resolver(
    store: StateStore, locks: LockManager, registry: AppRegistry, config: OverwatchConfig
) -> EnvVarResolver:
    """Environment variable resolver bound to the registry."""
    return EnvVarResolver(store, locks, registry, config.apps_dir)


@pytest.fixture
def docker() -> FakeDocker:
    """Fake container runtime."""
    return FakeDocker()


@pytest.fixture
def database() -> FakeDatabase:
    """Fake database adapter."""
    return FakeDatabase()


@pytest.fixture
def compose(config: OverwatchConfig) -> TemplateComposeGenerator:
    """Compose generator using the packaged templates."""
    return TemplateComposeGenerator(
        templates=TemplateEngine.with_overrides(None),
        prefix=config.project.prefix,
        network=config.shared_network,
    )


@pytest.fixture
def manager(
    config: OverwatchConfig,
    registry: AppRegistry,
    resolver: EnvVarResolver,
    database: FakeDatabase,
    compose: TemplateComposeGenerator,
    docker: FakeDocker,
    locks: LockManager,
    logger: StructuredLogger,
) -> TenantLifecycleManager:
    """Tenant lifecycle manager wired to fakes."""
    return TenantLifecycleManager(
        config=config,
        apps=registry,
        env=resolver,
        database=database,
        compose=compose,
        runtime=docker,  # type: ignore[arg-type]
        locks=locks,
        logger=logger,
    )


def read_operations(config: OverwatchConfig) -> list[Mapping[str, Any]]:
    """Return every record written to the operations log."""
    path = config.logs_dir / "operations.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]
