from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .models import DayType

DEFAULT_QUICK_ADD_TITLE = "Neue Aufgabe"

# Accepted by the quick-add start field, tried in order after ISO 8601.
LOCAL_DATETIME_FORMATS = (
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y",
    "%d.%m.%y %H:%M",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)

_TIMESPAN_RE = re.compile(r"^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{1,2})(?::(?P<seconds>\d{1,2}))?$")


def normalize_calendar_identifier(value: Any) -> Optional[str]:
    """Return a canonical calendar identifier without URL wrappers or slashes."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered.startswith("url(") and text.endswith(")"):
        inner = text[text.find("(") + 1 : -1].strip()
        if (inner.startswith("'") and inner.endswith("'")) or (
            inner.startswith('"') and inner.endswith('"')
        ):
            inner = inner[1:-1]
        text = inner.strip()
    text = text.rstrip("/")
    return text or None


def day_key(day: dt.date) -> str:
    return day.strftime("%Y-%m-%d")


def month_bounds(day: dt.date) -> tuple[dt.date, dt.date]:
    first = day.replace(day=1)
    next_month = (first + dt.timedelta(days=32)).replace(day=1)
    return first, next_month - dt.timedelta(days=1)


def week_start(day: dt.date) -> dt.date:
    return day - dt.timedelta(days=day.weekday())


def iter_days(start: dt.date, end: dt.date) -> Iterable[dt.date]:
    current = start
    while current <= end:
        yield current
        current += dt.timedelta(days=1)


def whole_minutes(delta: dt.timedelta) -> int:
    """Truncate a timedelta to whole minutes, toward zero."""
    return int(delta.total_seconds() / 60)


def pause_minutes(breaks: Iterable[Any]) -> int:
    total = 0
    for entry in breaks:
        if entry.end_local is None:
            continue
        total += whole_minutes(entry.end_local - entry.start_local)
    return total


def net_minutes(
    come: Optional[dt.datetime],
    go: Optional[dt.datetime],
    breaks: Iterable[Any] = (),
) -> int:
    """Worked minutes for a day: presence minus closed breaks.

    Returns 0 unless both come and go are set. A go before come yields a
    negative value which is reported as-is.
    """
    if come is None or go is None:
        return 0
    return whole_minutes(go - come) - pause_minutes(breaks)


def target_minutes(day_type: DayType | str, weekday: int, settings: Any) -> int:
    kind = DayType(day_type) if not isinstance(day_type, DayType) else day_type
    if kind.zeroes_target:
        return 0
    return settings.target_minutes_for(weekday)


def overtime_minutes(net: int, target: int) -> int:
    return net - target


def format_minutes(minutes: int) -> str:
    """Render minutes as ``"{h}h {mm}m"``.

    Hours are truncated toward zero and carry the sign, the minute part is
    always absolute, so -65 renders as ``"-1h 05m"`` and -30 as ``"0h 30m"``.
    """
    hours = abs(minutes) // 60
    if minutes < 0:
        hours = -hours
    return f"{hours}h {abs(minutes) % 60:02d}m"


def format_elapsed(delta: dt.timedelta) -> str:
    seconds = max(int(delta.total_seconds()), 0)
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def to_local_naive(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Local wall-clock time; an explicit offset is dropped after conversion."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def parse_local_datetime(text: Optional[str]) -> Optional[dt.datetime]:
    if not text or not text.strip():
        return None
    value = text.strip()
    try:
        parsed = dt.datetime.fromisoformat(value)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in LOCAL_DATETIME_FORMATS:
            try:
                parsed = dt.datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    return to_local_naive(parsed)


def parse_clock_time(day: dt.date, text: Optional[str]) -> Optional[dt.datetime]:
    """Parse ``HH:MM`` (or a full timestamp) as a local time on ``day``."""
    if not text or not text.strip():
        return None
    full = parse_local_datetime(text)
    if full is not None:
        return full
    try:
        clock = dt.time.fromisoformat(text.strip())
    except ValueError:
        return None
    return dt.datetime.combine(day, clock)


def parse_duration(text: Optional[str]) -> Optional[dt.timedelta]:
    """Parse ``45m``, ``2h`` or a time span such as ``1:30`` / ``1.02:00:00``.

    A bare integer is read as a number of days.
    """
    if not text or not text.strip():
        return None
    value = text.strip().lower()
    if value.endswith("m") and value[:-1].lstrip("-").isdigit():
        return dt.timedelta(minutes=int(value[:-1]))
    if value.endswith("h") and value[:-1].lstrip("-").isdigit():
        return dt.timedelta(hours=int(value[:-1]))
    if value.isdigit():
        return dt.timedelta(days=int(value))
    match = _TIMESPAN_RE.match(value)
    if not match:
        return None
    hours = int(match.group("hours"))
    minutes = int(match.group("minutes"))
    seconds = int(match.group("seconds") or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return dt.timedelta(
        days=int(match.group("days") or 0),
        hours=hours,
        minutes=minutes,
        seconds=seconds,
    )


@dataclass
class QuickAddResult:
    title: str
    start_local: Optional[dt.datetime] = None
    end_local: Optional[dt.datetime] = None
    ticket_url: str = ""


def parse_quick_add(text: str) -> QuickAddResult:
    """Parse ``title|start|duration|ticket-url``; empty fields are dropped."""
    parts = [part.strip() for part in (text or "").split("|")]
    parts = [part for part in parts if part]
    result = QuickAddResult(title=parts[0] if parts else DEFAULT_QUICK_ADD_TITLE)
    if len(parts) > 1:
        result.start_local = parse_local_datetime(parts[1])
    if len(parts) > 2:
        duration = parse_duration(parts[2])
        if duration is not None and result.start_local is not None:
            result.end_local = result.start_local + duration
    if len(parts) > 3:
        result.ticket_url = parts[3]
    return result
