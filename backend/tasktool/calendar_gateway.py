from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, TypeVar
from zoneinfo import ZoneInfo

import icalendar
from caldav import DAVClient
from caldav.lib import error as caldav_error

from .config import Settings
from .state import RuntimeState
from .utils import normalize_calendar_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

UTC = dt.timezone.utc
WORKER_NAME = "calendar-worker"
DEFAULT_CATEGORY = "FocusBlock"
SUMMARY_PREFIX = "Fokus: "
TEST_BLOCK_TITLE = "TaskTool Test"

SYNC_DISABLED = "Kalender-Sync ist deaktiviert."
TITLE_MISSING = "Titel fehlt."
INVALID_RANGE = "Ungültiger Zeitraum: Ende muss nach Start liegen."


class BlockResult(NamedTuple):
    ok: bool
    entry_id: str
    error: str


class DeleteResult(NamedTuple):
    ok: bool
    error: str


class CalendarError(RuntimeError):
    """Base class for failures raised by calendar backends."""


class CalendarNotConfigured(CalendarError):
    pass


class BlockNotFound(CalendarError):
    pass


class CalendarTimeout(CalendarError):
    pass


class CalendarBackend(Protocol):
    """The external calendar as seen by the gateway. Failures raise."""

    def is_available(self) -> bool: ...

    def upsert(
        self,
        entry_id: str,
        title: str,
        body: str,
        start: dt.datetime,
        end: dt.datetime,
        category: str,
    ) -> str: ...

    def delete(self, entry_id: str) -> None: ...


def _is_valid_range(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> bool:
    if start is None or end is None:
        return False
    if start.replace(tzinfo=None) == dt.datetime.min or end.replace(tzinfo=None) == dt.datetime.min:
        return False
    return end > start


def user_facing_error(exc: BaseException) -> str:
    """Map any backend failure to a stable message for the user."""
    if isinstance(exc, BlockNotFound):
        return "Kalendereintrag nicht gefunden."
    if isinstance(exc, CalendarNotConfigured):
        return "CalDAV ist nicht konfiguriert (URL, Benutzer oder Passwort fehlen)."
    if isinstance(exc, CalendarTimeout):
        return "Zeitüberschreitung beim Kalenderzugriff."
    if isinstance(exc, caldav_error.AuthorizationError):
        return "CalDAV-Anmeldung fehlgeschlagen."
    if isinstance(exc, caldav_error.DAVError):
        return f"CalDAV Fehler: {exc}"
    if isinstance(exc, OSError):
        return "Kalenderserver nicht erreichbar."
    message = str(exc).strip() or "Unbekannter Kalenderfehler."
    return f"{message} ({type(exc).__name__})"


def build_exception_log(
    operation: str,
    exc: BaseException,
    start: Optional[dt.datetime],
    end: Optional[dt.datetime],
    available: Optional[bool],
) -> str:
    lines = [
        f"Calendar {operation} failed",
        f"Thread: {threading.current_thread().name}",
        f"CalendarAvailable: {available}",
        f"StartLocal: {start.isoformat() if start else 'null'}",
        f"EndLocal: {end.isoformat() if end else 'null'}",
    ]
    if start and end:
        lines.append(f"DurationMinutes: {(end - start).total_seconds() / 60:.2f}")
    else:
        lines.append("DurationMinutes: null")
    lines.append(f"Exception: {type(exc).__name__}: {exc}")
    inner = exc.__cause__ or exc.__context__
    depth = 0
    while inner is not None and depth < 10:
        lines.append(f"Inner[{depth}] Type={type(inner).__module__}.{type(inner).__name__} Message={inner}")
        inner = inner.__cause__ or inner.__context__
        depth += 1
    return "\n".join(lines)


class CalDAVBackend:
    """Focus blocks stored as VEVENTs on a CalDAV calendar; entry-id is the UID."""

    def __init__(self, config: Settings, client_factory: Optional[Callable[[], Any]] = None):
        self._config = config
        self._client_factory = client_factory
        self._tz = ZoneInfo(config.timezone)

    def is_available(self) -> bool:
        return self._client_factory is not None or self._config.caldav_configured

    def _client(self) -> Any:
        if self._client_factory is not None:
            return self._client_factory()
        if not self._config.caldav_configured:
            raise CalendarNotConfigured("CalDAV credentials are incomplete")
        return DAVClient(
            url=self._config.caldav_url,
            username=self._config.caldav_user,
            password=self._config.caldav_password,
        )

    def _calendar(self) -> Any:
        calendars: List[Any] = self._client().principal().calendars()
        if not calendars:
            raise CalendarNotConfigured("No calendar available for this principal")
        wanted = normalize_calendar_identifier(self._config.caldav_calendar)
        if not wanted:
            return calendars[0]
        for calendar in calendars:
            for candidate in (getattr(calendar, "url", None), getattr(calendar, "name", None)):
                normalized = normalize_calendar_identifier(candidate)
                if normalized and normalized.casefold() == wanted.casefold():
                    return calendar
        raise CalendarNotConfigured(f"Calendar '{wanted}' not found")

    def _to_utc(self, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._tz)
        return value.astimezone(UTC)

    def _build_ical(
        self,
        uid: str,
        title: str,
        body: str,
        start: dt.datetime,
        end: dt.datetime,
        category: str,
    ) -> str:
        cal = icalendar.Calendar()
        cal.add("prodid", "-//TaskTool//Focus Blocks//DE")
        cal.add("version", "2.0")
        event = icalendar.Event()
        event.add("uid", uid)
        event.add("dtstamp", dt.datetime.now(UTC))
        event.add("summary", f"{SUMMARY_PREFIX}{title}")
        event.add("description", body)
        event.add("dtstart", self._to_utc(start))
        event.add("dtend", self._to_utc(end))
        event.add("categories", [category])
        event.add("transp", "OPAQUE")
        cal.add_component(event)
        return cal.to_ical().decode("utf-8")

    def upsert(
        self,
        entry_id: str,
        title: str,
        body: str,
        start: dt.datetime,
        end: dt.datetime,
        category: str,
    ) -> str:
        calendar = self._calendar()
        if entry_id:
            try:
                event = calendar.event_by_uid(entry_id)
            except caldav_error.NotFoundError:
                logger.info("Calendar entry %s vanished on the server, creating a new one", entry_id)
            else:
                event.data = self._build_ical(entry_id, title, body, start, end, category)
                event.save()
                return entry_id
        uid = str(uuid.uuid4())
        calendar.save_event(self._build_ical(uid, title, body, start, end, category))
        return uid

    def delete(self, entry_id: str) -> None:
        calendar = self._calendar()
        try:
            event = calendar.event_by_uid(entry_id)
        except caldav_error.NotFoundError as exc:
            raise BlockNotFound(entry_id) from exc
        event.delete()


class CalendarGateway:
    """Validating front for a calendar backend.

    Every backend call runs on one dedicated worker thread; callers wait for
    at most ``timeout_seconds``. Failures come back as results, never raise.
    """

    def __init__(self, state: RuntimeState, backend: CalendarBackend, timeout_seconds: float = 30.0):
        self._state = state
        self._backend = backend
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=WORKER_NAME)
        # Entry ids written by upserts whose caller may have stopped waiting.
        self._late_ids: Dict[str, str] = {}
        self._late_lock = threading.Lock()

    @property
    def backend(self) -> CalendarBackend:
        return self._backend

    def _run(self, action: Callable[[], T]) -> T:
        if threading.current_thread().name.startswith(WORKER_NAME):
            return action()
        future = self._executor.submit(action)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise CalendarTimeout(f"Calendar call exceeded {self.timeout_seconds:g}s") from exc

    def _remember(self, key: Optional[str], entry_id: str) -> None:
        if key and entry_id:
            with self._late_lock:
                self._late_ids[key] = entry_id

    def _forget(self, key: Optional[str], entry_id: str) -> None:
        if not key:
            return
        with self._late_lock:
            if self._late_ids.get(key) == entry_id:
                del self._late_ids[key]

    def _resolve(self, key: Optional[str], entry_id: str) -> str:
        """Fall back to the id a timed-out call for ``key`` wrote on the server."""
        if entry_id or not key:
            return entry_id
        with self._late_lock:
            late = self._late_ids.pop(key, "")
        if late:
            logger.info("Reusing calendar entry %s written after a timeout (%s)", late, key)
        return late

    def _available(self) -> Optional[bool]:
        try:
            return bool(self._backend.is_available())
        except Exception:
            return None

    def upsert_block(
        self,
        existing_entry_id: Optional[str],
        title: Optional[str],
        body: Optional[str],
        start: Optional[dt.datetime],
        end: Optional[dt.datetime],
        key: Optional[str] = None,
    ) -> BlockResult:
        """Create or update a block.

        ``key`` names the owning row (``task:<id>``, ``segment:<id>``). A call
        that outlives the timeout still finishes on the worker; its entry id is
        kept under ``key`` and reused by the next upsert or delete for that row.
        """
        existing = (existing_entry_id or "").strip()
        current = self._state.settings
        if not current.sync_enabled:
            return BlockResult(False, existing, SYNC_DISABLED)
        if not title or not title.strip():
            return BlockResult(False, existing, TITLE_MISSING)
        if not _is_valid_range(start, end):
            return BlockResult(False, existing, INVALID_RANGE)
        category = current.category_name.strip() or DEFAULT_CATEGORY
        clean_title = title.strip()

        def action() -> str:
            target = self._resolve(key, existing)
            saved = self._backend.upsert(target, clean_title, body or "", start, end, category)
            self._remember(key, saved or "")
            return saved

        try:
            entry_id = self._run(action)
        except Exception as exc:
            logger.error(build_exception_log("UpsertBlock", exc, start, end, self._available()))
            return BlockResult(False, existing, user_facing_error(exc))
        self._forget(key, entry_id or "")
        logger.info("Calendar block %s saved (%s - %s)", entry_id, start, end)
        return BlockResult(True, entry_id or "", "")

    def delete_block(self, entry_id: Optional[str], key: Optional[str] = None) -> DeleteResult:
        target = (entry_id or "").strip()
        if not self._state.settings.sync_enabled:
            return DeleteResult(True, "")
        if not target and not key:
            return DeleteResult(True, "")

        def action() -> str:
            resolved = self._resolve(key, target)
            if resolved:
                self._backend.delete(resolved)
                self._forget(key, resolved)
            return resolved

        try:
            removed = self._run(action)
        except Exception as exc:
            logger.error(build_exception_log("DeleteBlock", exc, None, None, self._available()))
            return DeleteResult(False, user_facing_error(exc))
        if removed:
            logger.info("Calendar block %s deleted", removed)
        return DeleteResult(True, "")

    def test_connection(self, now: Optional[dt.datetime] = None) -> DeleteResult:
        start = (now or dt.datetime.now()) + dt.timedelta(minutes=5)
        end = start + dt.timedelta(minutes=5)
        created = self.upsert_block("", TEST_BLOCK_TITLE, "Test appointment", start, end)
        if not created.ok:
            return DeleteResult(False, created.error)
        removed = self.delete_block(created.entry_id)
        if not removed.ok:
            return DeleteResult(False, removed.error)
        return DeleteResult(True, "")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
