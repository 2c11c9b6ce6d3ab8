"""Locking primitives guarding Overwatch's shared on-disk state.

Two layers cooperate:

* :class:`KeyedLock` serialises threads of one process per logical key in
  strict FIFO order, so competing writers are never starved.
* :class:`LockManager` wraps each keyed acquisition with an advisory
  ``flock`` on ``<run_dir>/<name>.lock`` so separate Overwatch processes (for
  example the CLI and a long-running monitor) also exclude each other.

Locks are scoped to a resource name (``apps``, ``env-vars``,
``tenant-overrides``), not to individual records.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import OverwatchError
from .exit_codes import ExitCode

APPS_LOCK = "apps"
ENV_VARS_LOCK = "env-vars"
TENANT_OVERRIDES_LOCK = "tenant-overrides"

_POLL_INTERVAL = 0.05


class LockTimeoutError(OverwatchError):
    """Raised when a lock cannot be acquired within the allotted time."""

    exit_code = ExitCode.ENVIRONMENT


class KeyedLock:
    """Per-key mutual exclusion with first-come, first-served ordering.

    Every acquirer appends a ticket to the key's queue; the ticket at the head
    of the queue holds the lock. A waiter that times out removes its ticket so
    it never blocks the callers queued behind it.
    """

    def __init__(self) -> None:
        """Create an empty lock table."""
        self._condition = threading.Condition()
        self._queues: dict[str, deque[object]] = {}

    def acquire(self, key: str, timeout: float | None = None) -> float:
        """Block until *key* is held; return the seconds spent waiting."""
        ticket = object()
        start = time.monotonic()
        deadline = None if timeout is None else start + timeout
        with self._condition:
            queue = self._queues.setdefault(key, deque())
            queue.append(ticket)
            while queue[0] is not ticket:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    queue.remove(ticket)
                    self._condition.notify_all()
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.2f}s waiting for lock '{key}'."
                    )
                self._condition.wait(remaining)
        return time.monotonic() - start

    def release(self, key: str) -> None:
        """Release *key*, handing it to the next queued waiter."""
        with self._condition:
            queue = self._queues.get(key)
            if not queue:
                raise RuntimeError(f"Lock '{key}' is not held.")
            queue.popleft()
            if not queue:
                del self._queues[key]
            self._condition.notify_all()

    def pending(self, key: str) -> int:
        """Return the number of holders plus waiters for *key*."""
        with self._condition:
            return len(self._queues.get(key, ()))

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[float]:
        """Hold *key* for the duration of the ``with`` block."""
        waited = self.acquire(key, timeout)
        try:
            yield waited
        finally:
            self.release(key)


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired resource lock."""

    name: str
    path: Path | None
    wait_ms: int


class LockManager:
    """Hand out named resource locks for read-modify-write cycles."""

    def __init__(self, run_dir: Path | None, default_timeout: float = 30.0) -> None:
        """Create a manager writing lock files under *run_dir* (``None`` disables them)."""
        self.run_dir = Path(run_dir).expanduser() if run_dir is not None else None
        self.default_timeout = default_timeout
        self._keyed = KeyedLock()

    def lock_path(self, name: str) -> Path | None:
        """Return the lock file used for *name*, if file locking is enabled."""
        if self.run_dir is None:
            return None
        safe = name.replace("/", "_")
        return self.run_dir / f"{safe}.lock"

    @contextmanager
    def resource_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the resource lock *name* for the duration of the ``with`` block."""
        limit = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        self._keyed.acquire(name, limit)
        try:
            path = self.lock_path(name)
            fd: int | None = None
            if path is not None:
                remaining = max(limit - (time.monotonic() - start), 0.0)
                fd = self._acquire_file_lock(name, path, remaining)
            try:
                wait_ms = int((time.monotonic() - start) * 1000)
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                if fd is not None:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)
        finally:
            self._keyed.release(name)

    def apps_lock(self, *, timeout: float | None = None) -> AbstractContextManager[LockHandle]:
        """Lock guarding the app registry document."""
        return self.resource_lock(APPS_LOCK, timeout=timeout)

    def env_vars_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock guarding the global env-var document."""
        return self.resource_lock(ENV_VARS_LOCK, timeout=timeout)

    def tenant_overrides_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock guarding the tenant override document."""
        return self.resource_lock(TENANT_OVERRIDES_LOCK, timeout=timeout)

    def tenant_lock(
        self, app_id: str, tenant_id: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock serialising lifecycle operations on one tenant."""
        return self.resource_lock(f"tenant-{app_id}-{tenant_id}", timeout=timeout)

    # ------------------------------------------------------------------
    def _acquire_file_lock(self, name: str, path: Path, timeout: float) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out waiting for lock '{name}' held by another process ({path})."
                    ) from None
                time.sleep(_POLL_INTERVAL)
        metadata = {
            "pid": os.getpid(),
            "path": str(path),
            "name": name,
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(metadata).encode("utf-8"))
        return fd


__all__ = [
    "APPS_LOCK",
    "ENV_VARS_LOCK",
    "KeyedLock",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "TENANT_OVERRIDES_LOCK",
]
