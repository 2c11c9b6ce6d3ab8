"""Structured operation logging for Overwatch.

Each mutating or reporting operation writes one JSON record to
``<logs_dir>/operations.jsonl`` describing its arguments, target, the steps it
performed, and its outcome. Diagnostic detail that must not reach callers (for
example full backup tool output) goes to the standard :mod:`logging` tree
instead, under the ``overwatch`` logger hierarchy.

The structured logger never raises because of its own I/O: when the log
directory cannot be created or a write fails it disables itself and carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger("overwatch")

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _default_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on host passwd database
        user = "unknown"
    return {"user": user, "pid": os.getpid()}


@dataclass(slots=True)
class OperationScope:
    """Accumulates the steps and outcome of one logged operation."""

    name: str
    args: dict[str, object] = field(default_factory=dict)
    target: dict[str, object] = field(default_factory=dict)
    actor: dict[str, object] = field(default_factory=_default_actor)
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a sub-step such as ``database.create`` or ``compose.up``."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        backups: Sequence[str] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            rc=0,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            rc=0,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            changed=0,
            rc=rc,
            errors=errors if errors is not None else [message],
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        rc: int,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "ts": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "operation": self.name,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSON-lines operation log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Log the operation executed inside the ``with`` block."""
        scope = OperationScope(name=name, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except Exception as exc:
            rc = int(getattr(exc, "exit_code", 1))
            if scope.result is None and rc != 0:
                scope.error(str(exc) or type(exc).__name__, rc=rc)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.", changed=0)
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                LOGGER.warning(
                    "Operation log disabled; write to %s failed: %s",
                    self._operations_log_path,
                    exc,
                )
                self._enabled = False


__all__ = ["LOGGER", "OperationScope", "StructuredLogger"]
