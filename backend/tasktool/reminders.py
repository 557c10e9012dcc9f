from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from . import services
from .database import db_session
from .events import REMINDER_DUE, TIMER_TICK, get_event_bus
from .state import RuntimeState
from .utils import format_elapsed

logger = logging.getLogger(__name__)

ReminderKey = Tuple[str, dt.datetime]


class RecurringTimer:
    """Run ``callback`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Timer %s callback failed", self.name)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class ReminderService:
    """Announces upcoming task starts once per (task, start)."""

    def __init__(self, state: RuntimeState, session_factory=db_session):
        self._state = state
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._announced: Dict[ReminderKey, bool] = {}
        self._snoozed: Dict[str, dt.datetime] = {}

    def check(self, now: Optional[dt.datetime] = None) -> List[dict]:
        moment = (now or dt.datetime.now()).replace(tzinfo=None)
        lead = dt.timedelta(minutes=self._state.settings.reminder_lead_minutes)
        window_end = moment + lead + dt.timedelta(minutes=1)
        due: List[dict] = []
        with self._session_factory() as db:
            tasks = services.list_upcoming_tasks(db, moment, window_end)
            with self._lock:
                self._prune(moment)
                for task in tasks:
                    key = (task.id, task.start_local)
                    snoozed_until = self._snoozed.get(task.id)
                    if snoozed_until is not None and moment < snoozed_until:
                        continue
                    if self._announced.get(key):
                        continue
                    self._announced[key] = True
                    self._snoozed.pop(task.id, None)
                    due.append(
                        {
                            "task_id": task.id,
                            "title": task.title,
                            "start_local": task.start_local,
                            "ticket_url": task.ticket_url,
                        }
                    )
        bus = get_event_bus()
        for reminder in due:
            logger.info("Reminder: %s starts at %s", reminder["title"], reminder["start_local"])
            bus.publish(REMINDER_DUE, reminder)
        return due

    def _prune(self, moment: dt.datetime) -> None:
        # Starts in the past can no longer fall into the window.
        for key in [key for key in self._announced if key[1] is None or key[1] < moment]:
            del self._announced[key]
        for task_id in [task_id for task_id, until in self._snoozed.items() if until <= moment]:
            del self._snoozed[task_id]

    def announced_count(self) -> int:
        with self._lock:
            return len(self._announced)

    def snooze(self, task_id: str, minutes: int = 5, now: Optional[dt.datetime] = None) -> dt.datetime:
        moment = (now or dt.datetime.now()).replace(tzinfo=None)
        until = moment + dt.timedelta(minutes=minutes)
        with self._lock:
            self._snoozed[task_id] = until
            for key in [key for key in self._announced if key[0] == task_id]:
                del self._announced[key]
        return until


class ElapsedTicker:
    """Publishes the tracked duration of every Running task."""

    def __init__(self, session_factory=db_session):
        self._session_factory = session_factory

    def tick(self, now: Optional[dt.datetime] = None) -> List[dict]:
        with self._session_factory() as db:
            running = [
                {
                    "task_id": task.id,
                    "title": task.title,
                    "elapsed": format_elapsed(services.tracked_duration(db, task.id, now)),
                }
                for task in services.list_running_tasks(db)
            ]
        if running:
            get_event_bus().publish(TIMER_TICK, running)
        return running
