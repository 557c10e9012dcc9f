from __future__ import annotations

import logging
from collections import defaultdict
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

TASKS_CHANGED = "tasks.changed"
SEGMENTS_CHANGED = "segments.changed"
WORKDAY_CHANGED = "workday.changed"
SETTINGS_CHANGED = "settings.changed"
REPORT_UPDATED = "report.updated"
REMINDER_DUE = "reminder.due"
TIMER_TICK = "timer.tick"

Callback = Callable[[str, Any], None]


class EventBus:
    """Synchronous publish/subscribe hub for "state changed, re-pull" hooks."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)

    def subscribe(self, event_type: str, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[event_type].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(event_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def publish(self, event_type: str, payload: Any = None) -> int:
        with self._lock:
            callbacks = list(self._subscribers.get(event_type, ()))
        delivered = 0
        for callback in callbacks:
            try:
                callback(event_type, payload)
            except Exception:
                logger.exception("Subscriber for %s failed", event_type)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
