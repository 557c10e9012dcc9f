from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from . import reports, services
from .calendar_gateway import CalDAVBackend, CalendarGateway
from .config import configure_logging, settings
from .database import get_db, init_db
from .events import SETTINGS_CHANGED, get_event_bus
from .launcher import try_open
from .reminders import ElapsedTicker, RecurringTimer, ReminderService
from .schemas import (
    BlockResultResponse,
    BreakResponse,
    DailySummaryResponse,
    DayMarkersRequest,
    ManualDayRequest,
    MonthlyReportResponse,
    OutcomeResponse,
    QuickAddRequest,
    SegmentCreateRequest,
    SegmentResponse,
    SegmentSyncResponse,
    SegmentUpdateRequest,
    SettingsResponse,
    SettingsUpdate,
    SnoozeRequest,
    StampRequest,
    TaskCreateRequest,
    TaskResponse,
    TaskUpdateRequest,
    TicketMinutesRequest,
    TrackedDurationResponse,
    WeeklyReportResponse,
    WorkDayResponse,
)
from .state import RuntimeState
from .utils import format_elapsed

configure_logging(settings)
logger = logging.getLogger(__name__)

if not init_db():
    logger.error("Continuing without a verified database schema")

runtime_state = RuntimeState(settings.settings_file)
runtime_state.load()

calendar_gateway = CalendarGateway(
    runtime_state,
    CalDAVBackend(settings),
    timeout_seconds=settings.calendar_timeout_seconds,
)
reminder_service = ReminderService(runtime_state)
elapsed_ticker = ElapsedTicker()


@asynccontextmanager
async def lifespan(app: FastAPI):
    timers = []
    if settings.background_jobs:
        timers = [
            RecurringTimer(settings.reminder_interval_seconds, app.state.reminders.check, "reminder-timer"),
            RecurringTimer(settings.timer_refresh_seconds, elapsed_ticker.tick, "elapsed-timer"),
        ]
        for timer in timers:
            timer.start()
        logger.info("Background timers started")
    try:
        yield
    finally:
        for timer in timers:
            timer.stop(timeout=2)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.runtime_state = runtime_state
app.state.calendar = calendar_gateway
app.state.reminders = reminder_service
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def _state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


def _calendar(request: Request) -> CalendarGateway:
    return request.app.state.calendar


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# Tasks


@app.get("/tasks", response_model=list[TaskResponse])
def get_tasks(db: Session = Depends(get_db)) -> list[TaskResponse]:
    return services.list_tasks(db)


@app.get("/tasks/search", response_model=list[TaskResponse])
def find_tasks(q: Optional[str] = None, done: bool = False, db: Session = Depends(get_db)) -> list[TaskResponse]:
    return services.search_tasks(db, q, done)


@app.get("/tasks/day/{day}", response_model=list[TaskResponse])
def tasks_for_day(day: dt.date, db: Session = Depends(get_db)) -> list[TaskResponse]:
    return services.list_tasks_for_day(db, day)


@app.get("/tasks/range", response_model=list[TaskResponse])
def tasks_in_range(start: dt.datetime, end: dt.datetime, db: Session = Depends(get_db)) -> list[TaskResponse]:
    return services.list_tasks_in_range(db, start, end)


@app.get("/tasks/upcoming", response_model=list[TaskResponse])
def upcoming_tasks(start: dt.datetime, end: dt.datetime, db: Session = Depends(get_db)) -> list[TaskResponse]:
    return services.list_upcoming_tasks(db, start, end)


@app.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreateRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return services.create_task(
        db,
        payload.title,
        description=payload.description,
        ticket_url=payload.ticket_url,
        start_local=payload.start_local,
        end_local=payload.end_local,
        priority=payload.priority,
        tags=payload.tags,
        status_value=payload.status,
    )


@app.post("/tasks/quick-add", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def quick_add(payload: QuickAddRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return services.quick_add_task(db, payload.text)


@app.get("/tasks/{task_id}", response_model=TaskResponse)
def read_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.get_task(db, task_id)


@app.patch("/tasks/{task_id}", response_model=TaskResponse)
def patch_task(task_id: str, payload: TaskUpdateRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return services.update_task(db, task_id, payload.model_dump(exclude_unset=True))


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_task(task_id: str, request: Request, db: Session = Depends(get_db)) -> Response:
    services.delete_task(db, _state(request), _calendar(request), task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/tasks/{task_id}/start", response_model=TaskResponse)
def start_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.start_task(db, task_id)


@app.post("/tasks/{task_id}/pause", response_model=TaskResponse)
def pause_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.pause_task(db, task_id)


@app.post("/tasks/{task_id}/stop", response_model=TaskResponse)
def stop_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.stop_task(db, task_id)


@app.post("/tasks/{task_id}/done", response_model=TaskResponse)
def finish_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.mark_done(db, task_id)


@app.post("/tasks/{task_id}/reopen", response_model=TaskResponse)
def reopen_task(task_id: str, db: Session = Depends(get_db)) -> TaskResponse:
    return services.reopen_task(db, task_id)


@app.post("/tasks/{task_id}/ticket-minutes", response_model=TaskResponse)
def book_ticket_minutes(task_id: str, payload: TicketMinutesRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return services.add_ticket_minutes(db, task_id, payload.minutes)


@app.get("/tasks/{task_id}/tracked", response_model=TrackedDurationResponse)
def tracked(task_id: str, db: Session = Depends(get_db)) -> TrackedDurationResponse:
    task = services.get_task(db, task_id)
    duration = services.tracked_duration(db, task.id)
    return TrackedDurationResponse(
        task_id=task.id,
        seconds=int(duration.total_seconds()),
        text=format_elapsed(duration),
    )


@app.post("/tasks/{task_id}/open-ticket", response_model=OutcomeResponse)
def open_ticket(task_id: str, request: Request, db: Session = Depends(get_db)) -> OutcomeResponse:
    task = services.get_task(db, task_id)
    ok, error = try_open(task.ticket_url)
    if not ok:
        _state(request).last_error = error
    return OutcomeResponse(ok=ok, error=error)


# Segments


@app.get("/tasks/{task_id}/segments", response_model=list[SegmentResponse])
def get_segments(task_id: str, db: Session = Depends(get_db)) -> list[SegmentResponse]:
    services.get_task(db, task_id)
    return services.list_segments(db, task_id)


@app.post("/tasks/{task_id}/segments", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
def create_segment(task_id: str, payload: SegmentCreateRequest, db: Session = Depends(get_db)) -> SegmentResponse:
    return services.add_segment(db, task_id, payload.start_local, payload.end_local, payload.note)


@app.patch("/segments/{segment_id}", response_model=SegmentResponse)
def patch_segment(segment_id: int, payload: SegmentUpdateRequest, db: Session = Depends(get_db)) -> SegmentResponse:
    return services.update_segment(db, segment_id, payload.model_dump(exclude_unset=True))


@app.delete("/segments/{segment_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_segment(segment_id: int, request: Request, db: Session = Depends(get_db)) -> Response:
    services.delete_segment(db, _state(request), _calendar(request), segment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Calendar blocks


@app.post("/tasks/{task_id}/calendar", response_model=BlockResultResponse)
def sync_task_block(task_id: str, request: Request, db: Session = Depends(get_db)) -> BlockResultResponse:
    result = services.sync_task_block(db, _state(request), _calendar(request), task_id)
    return BlockResultResponse(**result._asdict())


@app.delete("/tasks/{task_id}/calendar", response_model=OutcomeResponse)
def delete_task_block(task_id: str, request: Request, db: Session = Depends(get_db)) -> OutcomeResponse:
    result = services.delete_task_block(db, _state(request), _calendar(request), task_id)
    return OutcomeResponse(**result._asdict())


@app.post("/tasks/{task_id}/segments/calendar", response_model=SegmentSyncResponse)
def sync_all_segments(task_id: str, request: Request, db: Session = Depends(get_db)) -> SegmentSyncResponse:
    summary = services.sync_all_segments(db, _state(request), _calendar(request), task_id)
    return SegmentSyncResponse(
        ok=summary.ok,
        total=summary.total,
        synced=summary.synced,
        failed=summary.failed,
        errors=summary.errors,
    )


@app.post("/segments/{segment_id}/calendar", response_model=BlockResultResponse)
def sync_segment_block(segment_id: int, request: Request, db: Session = Depends(get_db)) -> BlockResultResponse:
    result = services.sync_segment_block(db, _state(request), _calendar(request), segment_id)
    return BlockResultResponse(**result._asdict())


@app.delete("/segments/{segment_id}/calendar", response_model=OutcomeResponse)
def delete_segment_block(segment_id: int, request: Request, db: Session = Depends(get_db)) -> OutcomeResponse:
    result = services.delete_segment_block(db, _state(request), _calendar(request), segment_id)
    return OutcomeResponse(**result._asdict())


@app.post("/calendar/test", response_model=OutcomeResponse)
def test_calendar(request: Request) -> OutcomeResponse:
    result = services.test_calendar_connection(_state(request), _calendar(request))
    return OutcomeResponse(**result._asdict())


# Work days


def _day_response(db: Session, day: dt.date) -> WorkDayResponse:
    record = services.get_or_create_day(db, day)
    return WorkDayResponse(
        day=record.day,
        come_local=record.come_local,
        go_local=record.go_local,
        day_type=record.day_type,
        is_br=bool(record.is_br),
        is_ho=bool(record.is_ho),
        breaks=[BreakResponse.model_validate(entry) for entry in services.list_breaks(db, day)],
    )


@app.get("/days/{day}", response_model=WorkDayResponse)
def read_day(day: dt.date, db: Session = Depends(get_db)) -> WorkDayResponse:
    return _day_response(db, day)


@app.post("/days/come", response_model=WorkDayResponse)
def stamp_come(payload: StampRequest, db: Session = Depends(get_db)) -> WorkDayResponse:
    record = services.set_come(db, payload.at)
    return _day_response(db, record.date)


@app.post("/days/go", response_model=WorkDayResponse)
def stamp_go(payload: StampRequest, db: Session = Depends(get_db)) -> WorkDayResponse:
    record = services.set_go(db, payload.at)
    return _day_response(db, record.date)


@app.post("/days/{day}/breaks/start", response_model=BreakResponse, status_code=status.HTTP_201_CREATED)
def begin_break(day: dt.date, payload: StampRequest, db: Session = Depends(get_db)) -> BreakResponse:
    return services.start_break(db, day, payload.at)


@app.post("/days/{day}/breaks/end", response_model=Optional[BreakResponse])
def finish_break(day: dt.date, payload: StampRequest, db: Session = Depends(get_db)) -> Optional[BreakResponse]:
    return services.end_break(db, day, payload.at)


@app.put("/days/{day}/manual", response_model=WorkDayResponse)
def save_manual_day(day: dt.date, payload: ManualDayRequest, db: Session = Depends(get_db)) -> WorkDayResponse:
    services.save_manual_day(db, day, payload.come_local, payload.go_local, payload.breaks)
    return _day_response(db, day)


@app.put("/days/{day}/markers", response_model=WorkDayResponse)
def set_markers(day: dt.date, payload: DayMarkersRequest, db: Session = Depends(get_db)) -> WorkDayResponse:
    services.set_day_markers(db, day, payload.day_type, payload.is_br, payload.is_ho)
    return _day_response(db, day)


# Reports


@app.get("/reports/day/{day}", response_model=DailySummaryResponse)
def day_report(day: dt.date, request: Request, db: Session = Depends(get_db)) -> DailySummaryResponse:
    return DailySummaryResponse.model_validate(reports.daily_summary(db, day, _state(request)))


@app.get("/reports/today", response_model=DailySummaryResponse)
def today_report(request: Request, db: Session = Depends(get_db)) -> DailySummaryResponse:
    return DailySummaryResponse.model_validate(reports.refresh_today(db, _state(request)))


@app.get("/reports/week/{day}", response_model=WeeklyReportResponse)
def week_report(day: dt.date, request: Request, db: Session = Depends(get_db)) -> WeeklyReportResponse:
    report = reports.weekly_report(db, day, _state(request))
    return WeeklyReportResponse.model_validate(report, from_attributes=True)


@app.get("/reports/month/{year}/{month}", response_model=MonthlyReportResponse)
def month_report(
    year: int,
    month: int,
    request: Request,
    top: int = Query(default=reports.TOP_TASKS_DEFAULT, ge=0),
    db: Session = Depends(get_db),
) -> MonthlyReportResponse:
    try:
        anchor = dt.date(year, month, 1)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Ungültiger Monat") from exc
    return MonthlyReportResponse.model_validate(reports.monthly_report(db, anchor, _state(request), top))


# Reminders


@app.post("/reminders/check")
def check_reminders(request: Request) -> list[dict]:
    return request.app.state.reminders.check()


@app.post("/reminders/{task_id}/snooze")
def snooze_reminder(task_id: str, payload: SnoozeRequest, request: Request) -> dict[str, str]:
    until = request.app.state.reminders.snooze(task_id, payload.minutes)
    return {"task_id": task_id, "snoozed_until": until.isoformat()}


# Settings


@app.get("/settings", response_model=SettingsResponse)
def read_settings(request: Request) -> SettingsResponse:
    return SettingsResponse(**_state(request).snapshot())


@app.put("/settings", response_model=SettingsResponse)
def write_settings(payload: SettingsUpdate, request: Request) -> SettingsResponse:
    state = _state(request)
    state.apply(payload.updates())
    snapshot = state.snapshot()
    get_event_bus().publish(SETTINGS_CHANGED, snapshot)
    return SettingsResponse(**snapshot)
