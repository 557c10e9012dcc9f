from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

import pytest

from tasktool.models import DayType
from tasktool.state import AppSettings
from tasktool.utils import (
    DEFAULT_QUICK_ADD_TITLE,
    format_elapsed,
    format_minutes,
    month_bounds,
    net_minutes,
    overtime_minutes,
    parse_clock_time,
    parse_duration,
    parse_local_datetime,
    parse_quick_add,
    pause_minutes,
    target_minutes,
    week_start,
)

DAY = dt.date(2024, 1, 17)


def _at(clock: str) -> dt.datetime:
    return dt.datetime.combine(DAY, dt.time.fromisoformat(clock))


def _break(start: str, end: str | None) -> SimpleNamespace:
    return SimpleNamespace(start_local=_at(start), end_local=_at(end) if end else None)


def test_net_minutes_without_breaks_is_presence():
    assert net_minutes(_at("08:00"), _at("16:30")) == 510


def test_closed_break_is_deducted_exactly():
    breaks = [_break("12:00", "12:45")]
    assert net_minutes(_at("08:00"), _at("16:30"), breaks) == 510 - 45


def test_open_break_contributes_nothing():
    breaks = [_break("12:00", "12:30"), _break("15:00", None)]
    assert pause_minutes(breaks) == 30
    assert net_minutes(_at("08:00"), _at("16:00"), breaks) == 450


def test_missing_come_or_go_yields_zero():
    assert net_minutes(None, _at("16:00")) == 0
    assert net_minutes(_at("08:00"), None, [_break("12:00", "12:30")]) == 0


def test_go_before_come_is_reported_negative():
    assert net_minutes(_at("10:00"), _at("09:00")) == -60


def test_partial_minutes_are_truncated():
    come = _at("08:00")
    go = _at("08:00") + dt.timedelta(minutes=59, seconds=59)
    assert net_minutes(come, go) == 59


@pytest.mark.parametrize("weekday", range(7))
@pytest.mark.parametrize("day_type", [DayType.AM, DayType.UL, "AM", "UL"])
def test_half_and_vacation_days_have_no_target(day_type, weekday):
    assert target_minutes(day_type, weekday, AppSettings()) == 0


def test_normal_day_uses_weekday_target():
    config = AppSettings(monday_target_minutes=420)
    assert target_minutes(DayType.NORMAL, 0, config) == 420
    assert target_minutes("Normal", 4, config) == 300
    assert target_minutes(DayType.NORMAL, 6, config) == 0


def test_overtime_is_net_minus_target():
    assert overtime_minutes(500, 480) == 20
    assert overtime_minutes(0, 300) == -300


@pytest.mark.parametrize(
    "minutes, expected",
    [
        (125, "2h 05m"),
        (-65, "-1h 05m"),
        (-30, "0h 30m"),
        (0, "0h 00m"),
        (60, "1h 00m"),
        (-600, "-10h 00m"),
    ],
)
def test_format_minutes(minutes, expected):
    assert format_minutes(minutes) == expected


def test_format_elapsed():
    assert format_elapsed(dt.timedelta(hours=1, minutes=2, seconds=3)) == "01:02:03"
    assert format_elapsed(dt.timedelta(seconds=-5)) == "00:00:00"


def test_calendar_helpers():
    assert month_bounds(dt.date(2024, 2, 10)) == (dt.date(2024, 2, 1), dt.date(2024, 2, 29))
    assert month_bounds(dt.date(2023, 12, 31)) == (dt.date(2023, 12, 1), dt.date(2023, 12, 31))
    assert week_start(dt.date(2024, 1, 21)) == dt.date(2024, 1, 15)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("45m", dt.timedelta(minutes=45)),
        ("2h", dt.timedelta(hours=2)),
        ("1:30", dt.timedelta(hours=1, minutes=30)),
        ("01:30:15", dt.timedelta(hours=1, minutes=30, seconds=15)),
        ("1.02:00:00", dt.timedelta(days=1, hours=2)),
        ("2", dt.timedelta(days=2)),
        ("soon", None),
        ("", None),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


def test_parse_local_datetime_accepts_iso_and_german_formats():
    assert parse_local_datetime("2024-01-15 09:00") == dt.datetime(2024, 1, 15, 9, 0)
    assert parse_local_datetime("2024-01-15T09:00:00") == dt.datetime(2024, 1, 15, 9, 0)
    assert parse_local_datetime("15.01.2024 09:00") == dt.datetime(2024, 1, 15, 9, 0)
    assert parse_local_datetime("morgen") is None


def test_parse_clock_time_on_day():
    assert parse_clock_time(DAY, "07:45") == _at("07:45")
    assert parse_clock_time(DAY, "") is None
    assert parse_clock_time(DAY, "later") is None


def test_quick_add_full_line():
    result = parse_quick_add("Fix bug|2024-01-15 09:00|45m|http://x")
    assert result.title == "Fix bug"
    assert result.start_local == dt.datetime(2024, 1, 15, 9, 0)
    assert result.end_local == dt.datetime(2024, 1, 15, 9, 45)
    assert result.ticket_url == "http://x"


def test_quick_add_title_only():
    result = parse_quick_add("Just a title")
    assert result.title == "Just a title"
    assert result.start_local is None
    assert result.end_local is None
    assert result.ticket_url == ""


def test_quick_add_defaults_and_unparseable_fields():
    assert parse_quick_add("").title == DEFAULT_QUICK_ADD_TITLE
    assert parse_quick_add(" | ").title == DEFAULT_QUICK_ADD_TITLE

    result = parse_quick_add("Review|irgendwann|2h")
    assert result.start_local is None
    assert result.end_local is None


def test_quick_add_hours_and_trimming():
    result = parse_quick_add("  Planung | 2024-03-01 13:00 | 2h ")
    assert result.title == "Planung"
    assert result.end_local == dt.datetime(2024, 3, 1, 15, 0)
