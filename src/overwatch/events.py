"""In-process publish/subscribe for monitor and scheduler notifications."""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping

LOGGER = logging.getLogger(__name__)

HEALTH_CHANGE = "health:change"
BACKUP_COMPLETE = "backup:complete"

Listener = Callable[[Mapping[str, object]], None]


class EventBus:
    """Deliver named events to subscribed listeners synchronously.

    A failing listener is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        """Create an empty bus."""
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

    def unsubscribe(self, event: str, listener: Listener) -> bool:
        """Remove *listener*; returns ``False`` when it was not subscribed."""
        with self._lock:
            listeners = self._listeners.get(event, [])
            if listener not in listeners:
                return False
            listeners.remove(listener)
            return True

    def emit(self, event: str, payload: Mapping[str, object]) -> int:
        """Deliver *payload* to every listener of *event*; returns how many succeeded."""
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        delivered = 0
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                LOGGER.exception("Listener for %s failed", event)
                continue
            delivered += 1
        return delivered


__all__ = ["BACKUP_COMPLETE", "HEALTH_CHANGE", "EventBus", "Listener"]
