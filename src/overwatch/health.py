"""Container health monitoring.

Each pass re-reads the app registry, lists running managed containers and
probes every service that declares a health check. Only state transitions are
published; steady state is silent. Thresholds and alerting are left to
subscribers, which receive ``consecutive_failures`` with every event.
"""
from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass

import requests

from .apps import AppRegistry
from .errors import OverwatchError
from .events import HEALTH_CHANGE, EventBus
from .models import Service, utc_now
from .naming import ContainerNameParser, ParsedName
from .providers.docker import DockerRuntime

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"


def check_http(host: str, port: int, path: str, timeout: float) -> bool:
    """Return whether ``GET http://host:port/path`` answers with a 2xx or 3xx status."""
    try:
        response = requests.get(
            f"http://{host}:{port}{path}", timeout=timeout, allow_redirects=False
        )
    except requests.RequestException:
        return False
    return 200 <= response.status_code < 400


def check_tcp(host: str, port: int, timeout: float) -> bool:
    """Return whether a TCP connection to *host*:*port* can be established."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@dataclass(slots=True)
class HealthState:
    """Latest classification of one container."""

    container_name: str
    app_id: str
    tenant_id: str
    service: str
    state: str = UNKNOWN
    consecutive_failures: int = 0
    last_check: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "container_name": self.container_name,
            "app_id": self.app_id,
            "tenant_id": self.tenant_id,
            "service": self.service,
            "state": self.state,
            "consecutive_failures": self.consecutive_failures,
            "last_check": self.last_check,
        }


class HealthStateStore:
    """Thread-safe in-memory map of container name to :class:`HealthState`."""

    def __init__(self) -> None:
        """Create an empty store."""
        self._states: dict[str, HealthState] = {}
        self._lock = threading.Lock()

    def get(self, container_name: str) -> HealthState | None:
        with self._lock:
            return self._states.get(container_name)

    def put(self, state: HealthState) -> None:
        with self._lock:
            self._states[state.container_name] = state

    def snapshot(self) -> list[HealthState]:
        with self._lock:
            return [self._states[name] for name in sorted(self._states)]

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


class HealthMonitor:
    """Poll managed containers and publish health transitions."""

    def __init__(
        self,
        apps: AppRegistry,
        runtime: DockerRuntime,
        prefix: str,
        *,
        store: HealthStateStore | None = None,
        events: EventBus | None = None,
        interval: float = 10.0,
        timeout: float = 5.0,
    ) -> None:
        """Create a monitor; each instance owns its own state store by default."""
        self.apps = apps
        self.runtime = runtime
        self.prefix = prefix
        self.store = store if store is not None else HealthStateStore()
        self.events = events if events is not None else EventBus()
        self.interval = interval
        self.timeout = timeout
        self._pass_guard = threading.Lock()
        self._stop = threading.Event()
        self._ticker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def run_once(self) -> bool:
        """Run one polling pass; returns ``False`` when a pass is already running."""
        if not self._pass_guard.acquire(blocking=False):
            LOGGER.debug("Health pass still running; skipping tick")
            return False
        try:
            self._check_all()
        except OverwatchError as exc:
            LOGGER.error("Health pass failed: %s", exc)
        finally:
            self._pass_guard.release()
        return True

    def _check_all(self) -> None:
        apps = {app.id: app for app in self.apps.list_apps()}
        if not apps:
            return
        parser = ContainerNameParser(self.prefix, apps)
        for container in self.runtime.list_containers(include_stopped=False):
            if not container.running:
                continue
            parsed = parser.parse(container.name)
            if not isinstance(parsed, ParsedName):
                continue
            service = apps[parsed.app_id].service(parsed.service)
            if service is None or service.health_check is None or service.is_init_container:
                continue
            port = service.probe_port
            if port is None:
                continue
            healthy = self._probe(container.name, port, service)
            self._record(container.name, parsed, healthy)

    def _probe(self, host: str, port: int, service: Service) -> bool:
        check = service.health_check
        if check is not None and check.type == "tcp":
            return check_tcp(host, port, self.timeout)
        path = check.path if check is not None and check.path else "/"
        return check_http(host, port, path, self.timeout)

    def _record(self, name: str, parsed: ParsedName, healthy: bool) -> None:
        current = self.store.get(name)
        previous_state = current.state if current is not None else UNKNOWN
        failures = 0 if healthy else (current.consecutive_failures if current else 0) + 1
        state = HealthState(
            container_name=name,
            app_id=parsed.app_id,
            tenant_id=parsed.tenant_id,
            service=parsed.service,
            state=HEALTHY if healthy else UNHEALTHY,
            consecutive_failures=failures,
            last_check=utc_now(),
        )
        self.store.put(state)
        if previous_state != state.state:
            LOGGER.info("%s: %s -> %s", name, previous_state, state.state)
            payload = state.to_dict()
            payload["previous_state"] = previous_state
            payload["new_state"] = state.state
            self.events.emit(HEALTH_CHANGE, payload)

    def states(self) -> list[HealthState]:
        """Return a snapshot of every known container state."""
        return self.store.snapshot()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._ticker is not None and self._ticker.is_alive()

    def start(self) -> None:
        """Start ticking every ``interval`` seconds in a background thread."""
        if self.running:
            return
        self._stop.clear()
        self._ticker = threading.Thread(target=self._tick, name="overwatch-health", daemon=True)
        self._ticker.start()
        LOGGER.info("Health monitor started (interval %.1fs)", self.interval)

    def stop(self) -> None:
        """Stop ticking; a pass already in flight runs to completion."""
        self._stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=self.interval + 1)
            self._ticker = None
        LOGGER.info("Health monitor stopped")

    def _tick(self) -> None:
        while True:
            # Passes run off the ticker thread; run_once skips overlapping ticks.
            worker = threading.Thread(
                target=self.run_once, name="overwatch-health-pass", daemon=True
            )
            worker.start()
            if self._stop.wait(self.interval):
                return


__all__ = [
    "HEALTHY",
    "UNHEALTHY",
    "UNKNOWN",
    "HealthMonitor",
    "HealthState",
    "HealthStateStore",
    "check_http",
    "check_tcp",
]
