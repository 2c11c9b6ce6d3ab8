"""Scheduled backups.

Every app whose backup configuration is enabled and carries a ``schedule``
has all of its tenants backed up through
:meth:`~overwatch.backups.BackupCoordinator.backup_all` whenever the cron
expression matches. A run still in flight for an app turns later matches for
that app into no-ops; other apps are unaffected. Schedules are re-read from
the registry on every check, so edits take effect without a restart.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from .apps import AppRegistry
from .backups import BackupAllResult, BackupCoordinator
from .cron import CronSchedule, parse_cron
from .errors import OverwatchError, ValidationError
from .events import BACKUP_COMPLETE, EventBus
from .models import utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 15.0

Clock = Callable[[], datetime]


@dataclass(slots=True)
class ScheduledBackup:
    """Schedule and last outcome for one app."""

    app_id: str
    expression: str
    next_run: datetime | None = None
    running: bool = False
    last_run: str | None = None
    last_success_count: int | None = None
    last_fail_count: int | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "app_id": self.app_id,
            "schedule": self.expression,
            "next_run": self.next_run.isoformat(timespec="minutes") if self.next_run else None,
            "running": self.running,
            "last_run": self.last_run,
            "last_success_count": self.last_success_count,
            "last_fail_count": self.last_fail_count,
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class _LastRun:
    started_at: str
    result: BackupAllResult | None = None
    error: str | None = None


class BackupScheduler:
    """Fire ``backup_all`` for apps whose cron schedule matches the current minute."""

    def __init__(
        self,
        apps: AppRegistry,
        backups: BackupCoordinator,
        *,
        events: EventBus | None = None,
        interval: float = DEFAULT_CHECK_INTERVAL,
        clock: Clock | None = None,
    ) -> None:
        """Create a scheduler; *clock* returns local time like cron does."""
        self.apps = apps
        self.backups = backups
        self.events = events if events is not None else EventBus()
        self.interval = interval
        self.clock = clock or datetime.now
        self._guards: dict[str, threading.Lock] = {}
        self._state_lock = threading.Lock()
        self._fired: dict[str, datetime] = {}
        self._last: dict[str, _LastRun] = {}
        self._workers: list[threading.Thread] = []
        self._stop = threading.Event()
        self._ticker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    def scheduled_apps(self) -> list[tuple[str, CronSchedule]]:
        """Return ``(app_id, schedule)`` for every app with an active schedule.

        An unparseable stored expression is logged and that app is skipped.
        """
        scheduled: list[tuple[str, CronSchedule]] = []
        for app in self.apps.list_apps():
            backup = app.backup
            if backup is None or not backup.enabled or not backup.schedule:
                continue
            try:
                scheduled.append((app.id, parse_cron(backup.schedule)))
            except ValidationError as exc:
                LOGGER.error("Backup schedule for app '%s' not started: %s", app.id, exc)
        return scheduled

    def schedules(self) -> list[ScheduledBackup]:
        """Describe every active schedule with its next run and last outcome."""
        now = self.clock()
        entries: list[ScheduledBackup] = []
        for app_id, schedule in self.scheduled_apps():
            entry = ScheduledBackup(
                app_id=app_id,
                expression=schedule.expression,
                next_run=schedule.next_after(now),
                running=self._guard(app_id).locked(),
            )
            last = self._last.get(app_id)
            if last is not None:
                entry.last_run = last.started_at
                entry.last_error = last.error
                if last.result is not None:
                    entry.last_success_count = last.result.success_count
                    entry.last_fail_count = last.result.fail_count
            entries.append(entry)
        return entries

    def due(self, now: datetime | None = None) -> list[str]:
        """Return apps scheduled for the minute of *now* that have not fired in it yet.

        Calling this marks the returned apps as fired for that minute.
        """
        minute = (now or self.clock()).replace(second=0, microsecond=0)
        due: list[str] = []
        with self._state_lock:
            for app_id, schedule in self.scheduled_apps():
                if not schedule.matches(minute) or self._fired.get(app_id) == minute:
                    continue
                self._fired[app_id] = minute
                due.append(app_id)
        return due

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def _guard(self, app_id: str) -> threading.Lock:
        with self._state_lock:
            return self._guards.setdefault(app_id, threading.Lock())

    def run_app(self, app_id: str) -> BackupAllResult | None:
        """Back up every tenant of *app_id*; returns ``None`` when a run is already active."""
        guard = self._guard(app_id)
        if not guard.acquire(blocking=False):
            LOGGER.warning("Scheduled backup for app '%s' still running; skipping", app_id)
            return None
        last = _LastRun(started_at=utc_now())
        self._last[app_id] = last
        LOGGER.info("Starting scheduled backup for app '%s'", app_id)
        try:
            result = self.backups.backup_all(app_id)
        except OverwatchError as exc:
            LOGGER.error("Scheduled backup for app '%s' failed: %s", app_id, exc)
            last.error = str(exc)
            self.events.emit(
                BACKUP_COMPLETE, {"app_id": app_id, "success": False, "error": str(exc)}
            )
            return None
        finally:
            guard.release()
        last.result = result
        LOGGER.info(
            "Scheduled backup for app '%s' complete: %d succeeded, %d failed",
            app_id,
            result.success_count,
            result.fail_count,
        )
        payload: dict[str, object] = {"app_id": app_id}
        payload.update(result.to_dict())
        self.events.emit(BACKUP_COMPLETE, payload)
        return result

    def run_pending(self, now: datetime | None = None) -> list[str]:
        """Start a background run for every due app; returns the apps started."""
        started = self.due(now)
        for app_id in started:
            worker = threading.Thread(
                target=self.run_app,
                args=(app_id,),
                name=f"overwatch-backup-{app_id}",
                daemon=True,
            )
            worker.start()
            with self._state_lock:
                self._workers = [item for item in self._workers if item.is_alive()]
                self._workers.append(worker)
        return started

    def wait(self, timeout: float | None = None) -> None:
        """Block until the runs started so far have finished."""
        with self._state_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    # ------------------------------------------------------------------
    # Ticker
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._ticker is not None and self._ticker.is_alive()

    def start(self) -> None:
        """Check schedules every ``interval`` seconds in a background thread."""
        if self.running:
            return
        self._stop.clear()
        self._ticker = threading.Thread(
            target=self._tick, name="overwatch-backup-scheduler", daemon=True
        )
        self._ticker.start()
        for app_id, schedule in self.scheduled_apps():
            LOGGER.info("Backup schedule for app '%s': %s", app_id, schedule.expression)

    def stop(self) -> None:
        """Stop checking; backups already running are left to finish."""
        self._stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=self.interval + 1)
            self._ticker = None
        LOGGER.info("Backup scheduler stopped")

    def _tick(self) -> None:
        while True:
            try:
                self.run_pending()
            except OverwatchError as exc:
                LOGGER.error("Backup schedule check failed: %s", exc)
            if self._stop.wait(self.interval):
                return


__all__ = ["DEFAULT_CHECK_INTERVAL", "BackupScheduler", "ScheduledBackup"]
