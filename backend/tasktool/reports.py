from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from . import services
from .events import REPORT_UPDATED, get_event_bus
from .models import Break, DayType, Task, WorkDay
from .state import RuntimeState
from .utils import (
    day_key,
    format_minutes,
    iter_days,
    month_bounds,
    net_minutes,
    overtime_minutes,
    pause_minutes,
    target_minutes,
    week_start,
)

logger = logging.getLogger(__name__)

TOP_TASKS_DEFAULT = 5


def _with_text(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        data[f"{key}_text"] = format_minutes(data[key])
    return data


def day_balance(
    day: dt.date,
    record: Optional[WorkDay],
    breaks: Iterable[Break],
    state: RuntimeState,
) -> Dict[str, Any]:
    """Net, pause, target and overtime minutes for one day.

    A missing record counts as a Normal day without come/go.
    """
    breaks = list(breaks)
    kind = record.kind if record is not None else DayType.NORMAL
    come = record.come_local if record is not None else None
    go = record.go_local if record is not None else None
    net = net_minutes(come, go, breaks)
    target = target_minutes(kind, day.weekday(), state.settings)
    return _with_text(
        {
            "day": day,
            "come_local": come,
            "go_local": go,
            "day_type": kind.value,
            "is_br": bool(record.is_br) if record is not None else False,
            "is_ho": bool(record.is_ho) if record is not None else False,
            "pause_minutes": pause_minutes(breaks),
            "net_minutes": net,
            "target_minutes": target,
            "overtime_minutes": overtime_minutes(net, target),
        },
        "pause_minutes",
        "net_minutes",
        "target_minutes",
        "overtime_minutes",
    )


def range_balances(db: Session, start: dt.date, end: dt.date, state: RuntimeState) -> List[Dict[str, Any]]:
    records = services.list_work_days(db, start, end)
    breaks = services.list_breaks_in_range(db, start, end)
    return [
        day_balance(current, records.get(day_key(current)), breaks.get(day_key(current), []), state)
        for current in iter_days(start, end)
    ]


def daily_summary(db: Session, day: dt.date, state: RuntimeState) -> Dict[str, Any]:
    record = services.get_or_create_day(db, day)
    summary = day_balance(day, record, services.list_breaks(db, day), state)
    first, _ = month_bounds(day)
    month_to_date = sum(entry["overtime_minutes"] for entry in range_balances(db, first, day, state))
    summary["month_overtime_minutes"] = month_to_date
    return _with_text(summary, "month_overtime_minutes")


def _touches_day(task: Task, start: dt.datetime, end: dt.datetime) -> bool:
    if task.start_local is None:
        return False
    task_end = task.end_local or task.start_local
    return task.start_local < end and task_end >= start


def weekly_report(db: Session, day: dt.date, state: RuntimeState) -> Dict[str, Any]:
    monday = week_start(day)
    sunday = monday + dt.timedelta(days=6)
    window_start = dt.datetime.combine(monday, dt.time.min)
    window_end = dt.datetime.combine(sunday + dt.timedelta(days=1), dt.time.min)
    # Tasks that started before the week can still reach into it.
    candidates = [
        task
        for task in services.list_tasks(db)
        if task.start_local is not None and task.start_local < window_end
    ]
    days = []
    for balance in range_balances(db, monday, sunday, state):
        start = dt.datetime.combine(balance["day"], dt.time.min)
        end = start + dt.timedelta(days=1)
        touching = sorted(
            (task for task in candidates if _touches_day(task, start, end)),
            key=lambda task: task.start_local,
        )
        balance["tasks"] = touching
        days.append(balance)
    totals = {
        "net_minutes": sum(entry["net_minutes"] for entry in days),
        "pause_minutes": sum(entry["pause_minutes"] for entry in days),
        "target_minutes": sum(entry["target_minutes"] for entry in days),
    }
    totals["overtime_minutes"] = totals["net_minutes"] - totals["target_minutes"]
    return _with_text(
        {"week_start": monday, "week_end": sunday, "days": days, **totals},
        "net_minutes",
        "pause_minutes",
        "target_minutes",
        "overtime_minutes",
    )


def _ticket_anchor(task: Task) -> Optional[dt.date]:
    if task.start_local is not None:
        return task.start_local.date()
    if task.created_utc is not None:
        return task.created_utc.date()
    return None


def monthly_report(db: Session, month: dt.date, state: RuntimeState, top: int = TOP_TASKS_DEFAULT) -> Dict[str, Any]:
    first, last = month_bounds(month)
    balances = range_balances(db, first, last, state)
    total_net = sum(entry["net_minutes"] for entry in balances)
    total_target = sum(entry["target_minutes"] for entry in balances)

    per_title: Dict[str, int] = defaultdict(int)
    for task in db.query(Task).all():
        anchor = _ticket_anchor(task)
        if anchor is None or anchor < first or anchor > last:
            continue
        per_title[task.title] += task.ticket_minutes_booked or 0
    ranked = sorted(per_title.items(), key=lambda item: (-item[1], item[0]))
    top_tasks = [
        {"title": title, "minutes": minutes, "minutes_text": format_minutes(minutes)}
        for title, minutes in ranked[: max(top, 0)]
    ]
    return _with_text(
        {
            "month": first.strftime("%Y-%m"),
            "first_day": first,
            "last_day": last,
            "ticket_minutes": sum(per_title.values()),
            "net_minutes": total_net,
            "target_minutes": total_target,
            "overtime_minutes": overtime_minutes(total_net, total_target),
            "top_tasks": top_tasks,
        },
        "ticket_minutes",
        "net_minutes",
        "target_minutes",
        "overtime_minutes",
    )


def refresh_today(db: Session, state: RuntimeState, today: Optional[dt.date] = None) -> Dict[str, Any]:
    summary = daily_summary(db, today or dt.date.today(), state)
    get_event_bus().publish(REPORT_UPDATED, summary)
    logger.debug("Daily summary refreshed for %s", summary["day"])
    return summary
