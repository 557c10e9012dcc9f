from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from .calendar_gateway import BlockResult, CalendarGateway, DeleteResult
from .events import SEGMENTS_CHANGED, TASKS_CHANGED, WORKDAY_CHANGED, get_event_bus
from .models import Break, DayType, Task, TaskSegment, TaskStatus, TimeLog, WorkDay
from .state import RuntimeState
from .utils import day_key, parse_quick_add

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

TASK_FIELDS = {
    "title",
    "description",
    "ticket_url",
    "start_local",
    "end_local",
    "status",
    "priority",
    "tags",
}

SEGMENT_FIELDS = {"start_local", "end_local", "note"}

# Listing order: Running, Planned, Done, everything else.
_STATUS_RANK = case(
    (Task.status == TaskStatus.RUNNING.value, 0),
    (Task.status == TaskStatus.PLANNED.value, 1),
    (Task.status == TaskStatus.DONE.value, 2),
    else_=3,
)


def _now() -> dt.datetime:
    return dt.datetime.now(UTC)


def _local_now() -> dt.datetime:
    return dt.datetime.now().replace(microsecond=0)


def _ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _notify(event_type: str, **payload: Any) -> None:
    get_event_bus().publish(event_type, payload)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def get_task(db: Session, task_id: str) -> Task:
    task = db.get(Task, str(task_id))
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Aufgabe nicht gefunden")
    return task


def list_tasks(db: Session) -> List[Task]:
    return (
        db.query(Task)
        .order_by(_STATUS_RANK, func.coalesce(Task.start_local, Task.created_utc).desc())
        .all()
    )


def list_tasks_for_day(db: Session, day: dt.date) -> List[Task]:
    start = dt.datetime.combine(day, dt.time.min)
    end = start + dt.timedelta(days=1)
    return (
        db.query(Task)
        .filter(
            or_(
                Task.start_local.is_(None),
                (Task.start_local >= start) & (Task.start_local < end),
            )
        )
        .order_by(Task.start_local.asc())
        .all()
    )


def list_tasks_in_range(db: Session, start: dt.datetime, end: dt.datetime) -> List[Task]:
    return (
        db.query(Task)
        .filter(Task.start_local.is_not(None), Task.start_local >= start, Task.start_local < end)
        .order_by(Task.start_local.asc())
        .all()
    )


def list_upcoming_tasks(db: Session, start: dt.datetime, end: dt.datetime) -> List[Task]:
    closed = {TaskStatus.DONE.value, TaskStatus.CANCELLED.value}
    return [task for task in list_tasks_in_range(db, start, end) if task.status not in closed]


def list_running_tasks(db: Session) -> List[Task]:
    return db.query(Task).filter(Task.status == TaskStatus.RUNNING.value).all()


def search_tasks(db: Session, text: Optional[str], done: bool = False) -> List[Task]:
    tasks = [task for task in list_tasks(db) if (task.status == TaskStatus.DONE.value) == done]
    query = (text or "").strip().casefold()
    if not query:
        return tasks
    return [
        task
        for task in tasks
        if query in (task.title or "").casefold()
        or query in (task.description or "").casefold()
        or query in (task.ticket_url or "").casefold()
    ]


def _validate_status(value: Any) -> str:
    try:
        return TaskStatus(value).value
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unbekannter Status: {value}") from exc


def create_task(
    db: Session,
    title: Optional[str],
    description: str = "",
    ticket_url: str = "",
    start_local: Optional[dt.datetime] = None,
    end_local: Optional[dt.datetime] = None,
    priority: Optional[int] = None,
    tags: str = "",
    status_value: str = TaskStatus.PLANNED.value,
) -> Task:
    if not title or not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Titel fehlt.")
    now = _now()
    task = Task(
        title=title.strip(),
        description=description or "",
        ticket_url=(ticket_url or "").strip(),
        start_local=start_local,
        end_local=end_local,
        status=_validate_status(status_value),
        priority=priority,
        tags=tags or "",
        calendar_entry_id="",
        ticket_minutes_booked=0,
        ticket_seconds_booked=0,
        created_utc=now,
        updated_utc=now,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.info("Task %s created: %s", task.id, task.title)
    _notify(TASKS_CHANGED, task_id=task.id, action="created")
    return task


def quick_add_task(db: Session, text: str) -> Task:
    parsed = parse_quick_add(text)
    return create_task(
        db,
        parsed.title,
        ticket_url=parsed.ticket_url,
        start_local=parsed.start_local,
        end_local=parsed.end_local,
    )


def update_task(db: Session, task_id: str, changes: Dict[str, Any]) -> Task:
    task = get_task(db, task_id)
    for key, value in changes.items():
        if key not in TASK_FIELDS:
            continue
        if key == "title":
            if not value or not str(value).strip():
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Titel fehlt.")
            value = str(value).strip()
        elif key == "status":
            value = _validate_status(value)
        elif key in {"description", "ticket_url", "tags"}:
            value = value or ""
        setattr(task, key, value)
    task.touch()
    db.add(task)
    db.commit()
    db.refresh(task)
    _notify(TASKS_CHANGED, task_id=task.id, action="updated")
    return task


def _set_status(db: Session, task: Task, new_status: TaskStatus, action: str) -> Task:
    task.status = new_status.value
    task.touch()
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.info("Task %s %s (status %s)", task.id, action, task.status)
    _notify(TASKS_CHANGED, task_id=task.id, action=action)
    return task


def mark_done(db: Session, task_id: str) -> Task:
    return _set_status(db, get_task(db, task_id), TaskStatus.DONE, "done")


def reopen_task(db: Session, task_id: str) -> Task:
    return _set_status(db, get_task(db, task_id), TaskStatus.PLANNED, "reopened")


def _open_log(db: Session, task_id: str) -> Optional[TimeLog]:
    return (
        db.query(TimeLog)
        .filter(TimeLog.task_id == task_id, TimeLog.end_utc.is_(None))
        .order_by(TimeLog.id.desc())
        .first()
    )


def _close_open_log(db: Session, task_id: str, note: str, now: dt.datetime) -> Optional[TimeLog]:
    log = _open_log(db, task_id)
    if log is None:
        return None
    log.close(now, note)
    db.add(log)
    return log


def start_task(db: Session, task_id: str, now: Optional[dt.datetime] = None) -> Task:
    """Mark the task Running and open a new time log.

    Other Running tasks are left alone; several tasks may run at once.
    """
    task = get_task(db, task_id)
    moment = _ensure_utc(now) if now else _now()
    _close_open_log(db, task.id, "restart", moment)
    db.add(TimeLog(task_id=task.id, start_utc=moment, note="running"))
    return _set_status(db, task, TaskStatus.RUNNING, "started")


def pause_task(db: Session, task_id: str, now: Optional[dt.datetime] = None) -> Task:
    task = get_task(db, task_id)
    _close_open_log(db, task.id, "pause", _ensure_utc(now) if now else _now())
    return _set_status(db, task, TaskStatus.PLANNED, "paused")


def stop_task(db: Session, task_id: str, now: Optional[dt.datetime] = None) -> Task:
    task = get_task(db, task_id)
    closed = _close_open_log(db, task.id, "stop", _ensure_utc(now) if now else _now())
    if task.status == TaskStatus.RUNNING.value:
        return _set_status(db, task, TaskStatus.PLANNED, "stopped")
    if closed is not None:
        db.commit()
    return task


def add_ticket_minutes(db: Session, task_id: str, minutes: int) -> Task:
    task = get_task(db, task_id)
    task.book_ticket_minutes(int(minutes))
    task.touch()
    db.add(task)
    db.commit()
    db.refresh(task)
    _notify(TASKS_CHANGED, task_id=task.id, action="ticket_minutes")
    return task


def tracked_duration(db: Session, task_id: str, now: Optional[dt.datetime] = None) -> dt.timedelta:
    moment = _ensure_utc(now) if now else _now()
    logs = db.query(TimeLog).filter(TimeLog.task_id == str(task_id)).all()
    total = dt.timedelta(0)
    for log in logs:
        total += log.elapsed(moment)
    return total


def delete_task(db: Session, state: RuntimeState, gateway: CalendarGateway, task_id: str) -> int:
    """Delete a task with its segments and time logs.

    Calendar blocks are removed first; a failed removal is logged and the
    delete goes ahead. Returns the number of calendar failures.
    """
    task = get_task(db, task_id)
    failures = 0
    for segment in list_segments(db, task.id):
        result = gateway.delete_block(segment.calendar_entry_id, key=_segment_key(segment))
        if not result.ok:
            failures += 1
            state.last_error = result.error
            logger.warning("Segment calendar delete failed for segment %s: %s", segment.id, result.error)
    result = gateway.delete_block(task.calendar_entry_id, key=_task_key(task))
    if not result.ok:
        failures += 1
        state.last_error = result.error
        logger.warning("Task calendar delete failed for task %s: %s", task.id, result.error)
    db.delete(task)
    db.commit()
    logger.info("Task %s deleted", task_id)
    _notify(TASKS_CHANGED, task_id=task_id, action="deleted")
    return failures


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


def get_segment(db: Session, segment_id: int) -> TaskSegment:
    segment = db.get(TaskSegment, segment_id)
    if not segment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Segment nicht gefunden")
    return segment


def list_segments(db: Session, task_id: str) -> List[TaskSegment]:
    return (
        db.query(TaskSegment)
        .filter(TaskSegment.task_id == str(task_id))
        .order_by(TaskSegment.start_local.asc(), TaskSegment.id.asc())
        .all()
    )


def add_segment(
    db: Session,
    task_id: str,
    start_local: dt.datetime,
    end_local: dt.datetime,
    note: str = "",
) -> TaskSegment:
    task = get_task(db, task_id)
    segment = TaskSegment(
        task_id=task.id,
        start_local=start_local,
        end_local=end_local,
        note=note or "",
        calendar_entry_id="",
    )
    segment.recompute_planned_minutes()
    db.add(segment)
    db.commit()
    db.refresh(segment)
    _notify(SEGMENTS_CHANGED, task_id=task.id, segment_id=segment.id, action="created")
    return segment


def update_segment(db: Session, segment_id: int, changes: Dict[str, Any]) -> TaskSegment:
    segment = get_segment(db, segment_id)
    for key, value in changes.items():
        if key not in SEGMENT_FIELDS:
            continue
        if key == "note":
            value = value or ""
        elif value is None:
            continue
        setattr(segment, key, value)
    segment.recompute_planned_minutes()
    db.add(segment)
    db.commit()
    db.refresh(segment)
    _notify(SEGMENTS_CHANGED, task_id=segment.task_id, segment_id=segment.id, action="updated")
    return segment


def delete_segment(db: Session, state: RuntimeState, gateway: CalendarGateway, segment_id: int) -> None:
    segment = get_segment(db, segment_id)
    result = gateway.delete_block(segment.calendar_entry_id, key=_segment_key(segment))
    if not result.ok:
        state.last_error = result.error
        logger.warning("Segment calendar delete failed for segment %s: %s", segment.id, result.error)
    task_id = segment.task_id
    db.delete(segment)
    db.commit()
    _notify(SEGMENTS_CHANGED, task_id=task_id, segment_id=segment_id, action="deleted")


# ---------------------------------------------------------------------------
# Calendar blocks
# ---------------------------------------------------------------------------


@dataclass
class SegmentSyncSummary:
    total: int = 0
    synced: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


def _task_key(task: Task) -> str:
    return f"task:{task.id}"


def _segment_key(segment: TaskSegment) -> str:
    return f"segment:{segment.id}"


def _task_block_body(task: Task) -> str:
    return f"{task.description or ''}\n{task.ticket_url or ''}\nTaskID: {task.id}"


def _segment_block_body(task: Task, segment: TaskSegment) -> str:
    return (
        f"{task.description or ''}\n{task.ticket_url or ''}\n"
        f"TaskID: {task.id}\nSegmentID: {segment.id}\nNotiz: {segment.note or ''}"
    )


def sync_task_block(db: Session, state: RuntimeState, gateway: CalendarGateway, task_id: str) -> BlockResult:
    task = get_task(db, task_id)
    state.last_error = ""
    result = gateway.upsert_block(
        task.calendar_entry_id,
        task.title,
        _task_block_body(task),
        task.start_local,
        task.end_local,
        key=_task_key(task),
    )
    if not result.ok:
        state.last_error = f"Kalender-Sync Fehler: {result.error}"
        return result
    task.calendar_entry_id = result.entry_id
    task.touch()
    db.add(task)
    db.commit()
    _notify(TASKS_CHANGED, task_id=task.id, action="synced")
    return result


def delete_task_block(db: Session, state: RuntimeState, gateway: CalendarGateway, task_id: str) -> DeleteResult:
    task = get_task(db, task_id)
    state.last_error = ""
    result = gateway.delete_block(task.calendar_entry_id, key=_task_key(task))
    if not result.ok:
        state.last_error = result.error
        return result
    if task.calendar_entry_id:
        task.calendar_entry_id = ""
        task.touch()
        db.add(task)
        db.commit()
        _notify(TASKS_CHANGED, task_id=task.id, action="unsynced")
    return result


def _sync_segment(
    db: Session,
    state: RuntimeState,
    gateway: CalendarGateway,
    task: Task,
    segment: TaskSegment,
) -> BlockResult:
    result = gateway.upsert_block(
        segment.calendar_entry_id,
        task.title,
        _segment_block_body(task, segment),
        segment.start_local,
        segment.end_local,
        key=_segment_key(segment),
    )
    if not result.ok:
        state.last_error = f"Kalender-Sync Fehler: {result.error}"
        return result
    segment.calendar_entry_id = result.entry_id
    db.add(segment)
    db.commit()
    return result


def sync_segment_block(db: Session, state: RuntimeState, gateway: CalendarGateway, segment_id: int) -> BlockResult:
    segment = get_segment(db, segment_id)
    task = get_task(db, segment.task_id)
    state.last_error = ""
    result = _sync_segment(db, state, gateway, task, segment)
    if result.ok:
        _notify(SEGMENTS_CHANGED, task_id=task.id, segment_id=segment.id, action="synced")
    return result


def delete_segment_block(
    db: Session,
    state: RuntimeState,
    gateway: CalendarGateway,
    segment_id: int,
) -> DeleteResult:
    segment = get_segment(db, segment_id)
    state.last_error = ""
    result = gateway.delete_block(segment.calendar_entry_id, key=_segment_key(segment))
    if not result.ok:
        state.last_error = result.error
        return result
    if segment.calendar_entry_id:
        segment.calendar_entry_id = ""
        db.add(segment)
        db.commit()
        _notify(SEGMENTS_CHANGED, task_id=segment.task_id, segment_id=segment.id, action="unsynced")
    return result


def sync_all_segments(
    db: Session,
    state: RuntimeState,
    gateway: CalendarGateway,
    task_id: str,
) -> SegmentSyncSummary:
    task = get_task(db, task_id)
    state.last_error = ""
    summary = SegmentSyncSummary()
    for segment in list_segments(db, task.id):
        summary.total += 1
        result = _sync_segment(db, state, gateway, task, segment)
        if result.ok:
            summary.synced += 1
        else:
            summary.failed += 1
            summary.errors.append(f"Segment {segment.id}: {result.error}")
    if summary.failed:
        state.last_error = (
            f"{summary.failed} von {summary.total} Segmenten nicht synchronisiert: {summary.errors[0]}"
        )
        logger.warning("Segment sync for task %s: %d of %d failed", task.id, summary.failed, summary.total)
    _notify(SEGMENTS_CHANGED, task_id=task.id, action="synced_all")
    return summary


def test_calendar_connection(state: RuntimeState, gateway: CalendarGateway) -> DeleteResult:
    state.last_error = ""
    result = gateway.test_connection()
    if not result.ok:
        state.last_error = f"Kalender Verbindungstest fehlgeschlagen: {result.error}"
    return result


# ---------------------------------------------------------------------------
# Work days and breaks
# ---------------------------------------------------------------------------


def get_or_create_day(db: Session, day: dt.date) -> WorkDay:
    key = day_key(day)
    record = db.get(WorkDay, key)
    if record is not None:
        return record
    record = WorkDay(day=key, day_type=DayType.NORMAL.value, is_br=False, is_ho=False)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_work_days(db: Session, start: dt.date, end: dt.date) -> Dict[str, WorkDay]:
    records = (
        db.query(WorkDay)
        .filter(WorkDay.day >= day_key(start), WorkDay.day <= day_key(end))
        .order_by(WorkDay.day.asc())
        .all()
    )
    return {record.day: record for record in records}


def list_breaks(db: Session, day: dt.date) -> List[Break]:
    return (
        db.query(Break)
        .filter(Break.day == day_key(day))
        .order_by(Break.start_local.asc(), Break.id.asc())
        .all()
    )


def list_breaks_in_range(db: Session, start: dt.date, end: dt.date) -> Dict[str, List[Break]]:
    rows = (
        db.query(Break)
        .filter(Break.day >= day_key(start), Break.day <= day_key(end))
        .order_by(Break.start_local.asc(), Break.id.asc())
        .all()
    )
    grouped: Dict[str, List[Break]] = defaultdict(list)
    for row in rows:
        grouped[row.day].append(row)
    return grouped


def _stamp_day(db: Session, field_name: str, now: Optional[dt.datetime]) -> WorkDay:
    moment = (now or _local_now()).replace(tzinfo=None)
    record = get_or_create_day(db, moment.date())
    setattr(record, field_name, moment)
    db.add(record)
    db.commit()
    db.refresh(record)
    _notify(WORKDAY_CHANGED, day=record.day, action=field_name)
    return record


def set_come(db: Session, now: Optional[dt.datetime] = None) -> WorkDay:
    return _stamp_day(db, "come_local", now)


def set_go(db: Session, now: Optional[dt.datetime] = None) -> WorkDay:
    return _stamp_day(db, "go_local", now)


def start_break(db: Session, day: dt.date, now: Optional[dt.datetime] = None) -> Break:
    entry = Break(day=day_key(day), start_local=(now or _local_now()).replace(tzinfo=None), note="pause")
    db.add(entry)
    db.commit()
    db.refresh(entry)
    _notify(WORKDAY_CHANGED, day=entry.day, action="break_started")
    return entry


def end_break(db: Session, day: dt.date, now: Optional[dt.datetime] = None) -> Optional[Break]:
    """Close the most recently opened break of ``day``; no-op when none is open."""
    entry = (
        db.query(Break)
        .filter(Break.day == day_key(day), Break.end_local.is_(None))
        .order_by(Break.id.desc())
        .first()
    )
    if entry is None:
        return None
    entry.end_local = (now or _local_now()).replace(tzinfo=None)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    _notify(WORKDAY_CHANGED, day=entry.day, action="break_ended")
    return entry


def _build_break(key: str, entry: Any) -> Break:
    note = (getattr(entry, "note", "") or "").strip()
    return Break(
        day=key,
        start_local=entry.start_local,
        end_local=getattr(entry, "end_local", None),
        note=note or "pause",
    )


def save_manual_day(
    db: Session,
    day: dt.date,
    come: Optional[dt.datetime],
    go: Optional[dt.datetime],
    breaks: Iterable[Any],
) -> WorkDay:
    """Replace come/go and the full break list of a day in one transaction."""
    key = day_key(day)
    try:
        record = db.get(WorkDay, key)
        if record is None:
            record = WorkDay(day=key, day_type=DayType.NORMAL.value, is_br=False, is_ho=False)
        record.come_local = come
        record.go_local = go
        db.add(record)
        db.query(Break).filter(Break.day == key).delete(synchronize_session=False)
        for entry in breaks:
            db.add(_build_break(key, entry))
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Manual save of %s rolled back", key)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Manuelles Speichern fehlgeschlagen: {exc}",
        ) from exc
    db.refresh(record)
    _notify(WORKDAY_CHANGED, day=key, action="manual")
    return record


def set_day_markers(db: Session, day: dt.date, day_type: Any, is_br: bool, is_ho: bool) -> WorkDay:
    try:
        kind = DayType(day_type)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unbekannter Tagestyp: {day_type}") from exc
    record = get_or_create_day(db, day)
    record.day_type = kind.value
    record.is_br = bool(is_br)
    record.is_ho = bool(is_ho)
    db.add(record)
    db.commit()
    db.refresh(record)
    _notify(WORKDAY_CHANGED, day=record.day, action="markers")
    return record
