from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_serializer

from .utils import to_local_naive

TaskStatusLiteral = Literal["Planned", "Running", "Done", "Cancelled"]
DayTypeLiteral = Literal["Normal", "AM", "UL"]


def _serialize_datetime(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _serialize_local(value: Optional[dt.datetime]) -> Optional[str]:
    # Local wall-clock timestamps travel without an offset.
    if value is None:
        return None
    return value.replace(tzinfo=None).isoformat()


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    title: str
    description: str
    ticket_url: str
    start_local: Optional[dt.datetime]
    end_local: Optional[dt.datetime]
    status: str
    priority: Optional[int]
    tags: str
    calendar_entry_id: str
    ticket_minutes_booked: int
    ticket_seconds_booked: int
    created_utc: dt.datetime
    updated_utc: dt.datetime

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "ticket_url": self.ticket_url,
            "start_local": _serialize_local(self.start_local),
            "end_local": _serialize_local(self.end_local),
            "status": self.status,
            "priority": self.priority,
            "tags": self.tags,
            "calendar_entry_id": self.calendar_entry_id,
            "ticket_minutes_booked": self.ticket_minutes_booked,
            "ticket_seconds_booked": self.ticket_seconds_booked,
            "created_utc": _serialize_datetime(self.created_utc),
            "updated_utc": _serialize_datetime(self.updated_utc),
        }


class LocalTimesRequest(BaseModel):
    """Request body whose timestamps are stored as local wall-clock time."""

    @field_validator("*")
    @classmethod
    def _to_wall_clock(cls, value: Any) -> Any:
        if isinstance(value, dt.datetime):
            return to_local_naive(value)
        return value


class TaskCreateRequest(LocalTimesRequest):
    title: str
    description: str = ""
    ticket_url: str = ""
    start_local: Optional[dt.datetime] = None
    end_local: Optional[dt.datetime] = None
    priority: Optional[int] = None
    tags: str = ""
    status: TaskStatusLiteral = "Planned"


class TaskUpdateRequest(LocalTimesRequest):
    title: Optional[str] = None
    description: Optional[str] = None
    ticket_url: Optional[str] = None
    start_local: Optional[dt.datetime] = None
    end_local: Optional[dt.datetime] = None
    status: Optional[TaskStatusLiteral] = None
    priority: Optional[int] = None
    tags: Optional[str] = None


class QuickAddRequest(BaseModel):
    text: str = ""


class TicketMinutesRequest(BaseModel):
    minutes: int


class TrackedDurationResponse(BaseModel):
    task_id: str
    seconds: int
    text: str


class SegmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    task_id: str
    start_local: dt.datetime
    end_local: dt.datetime
    planned_minutes: int
    note: str
    calendar_entry_id: str
    validation_hint: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "start_local": _serialize_local(self.start_local),
            "end_local": _serialize_local(self.end_local),
            "planned_minutes": self.planned_minutes,
            "note": self.note,
            "calendar_entry_id": self.calendar_entry_id,
            "validation_hint": self.validation_hint,
        }


class SegmentCreateRequest(LocalTimesRequest):
    start_local: dt.datetime
    end_local: dt.datetime
    note: str = ""


class SegmentUpdateRequest(LocalTimesRequest):
    start_local: Optional[dt.datetime] = None
    end_local: Optional[dt.datetime] = None
    note: Optional[str] = None


class BlockResultResponse(BaseModel):
    ok: bool
    entry_id: str = ""
    error: str = ""


class OutcomeResponse(BaseModel):
    ok: bool
    error: str = ""


class SegmentSyncResponse(BaseModel):
    ok: bool
    total: int
    synced: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class BreakResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    day: str
    start_local: dt.datetime
    end_local: Optional[dt.datetime]
    note: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "day": self.day,
            "start_local": _serialize_local(self.start_local),
            "end_local": _serialize_local(self.end_local),
            "note": self.note,
        }


class WorkDayResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    day: str
    come_local: Optional[dt.datetime]
    go_local: Optional[dt.datetime]
    day_type: str
    is_br: bool
    is_ho: bool
    breaks: List[BreakResponse] = Field(default_factory=list)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "day": self.day,
            "come_local": _serialize_local(self.come_local),
            "go_local": _serialize_local(self.go_local),
            "day_type": self.day_type,
            "is_br": self.is_br,
            "is_ho": self.is_ho,
            "breaks": [entry._serialize() for entry in self.breaks],
        }


class StampRequest(LocalTimesRequest):
    at: Optional[dt.datetime] = None


class ManualBreak(LocalTimesRequest):
    start_local: dt.datetime
    end_local: Optional[dt.datetime] = None
    note: str = "pause"

    @field_validator("end_local")
    @classmethod
    def _end_after_start(cls, value: Optional[dt.datetime], info: ValidationInfo) -> Optional[dt.datetime]:
        start = to_local_naive(info.data.get("start_local"))
        value = to_local_naive(value)
        if value is not None and start is not None and value <= start:
            raise ValueError("Pausenende muss nach Pausenbeginn liegen.")
        return value


class ManualDayRequest(LocalTimesRequest):
    come_local: Optional[dt.datetime] = None
    go_local: Optional[dt.datetime] = None
    breaks: List[ManualBreak] = Field(default_factory=list)


class DayMarkersRequest(BaseModel):
    day_type: DayTypeLiteral = "Normal"
    is_br: bool = False
    is_ho: bool = False


class DayBalanceResponse(BaseModel):
    day: dt.date
    come_local: Optional[dt.datetime] = None
    go_local: Optional[dt.datetime] = None
    day_type: str
    is_br: bool
    is_ho: bool
    pause_minutes: int
    pause_minutes_text: str
    net_minutes: int
    net_minutes_text: str
    target_minutes: int
    target_minutes_text: str
    overtime_minutes: int
    overtime_minutes_text: str


class DailySummaryResponse(DayBalanceResponse):
    month_overtime_minutes: int
    month_overtime_minutes_text: str


class WeekDayResponse(DayBalanceResponse):
    tasks: List[TaskResponse] = Field(default_factory=list)


class WeeklyReportResponse(BaseModel):
    week_start: dt.date
    week_end: dt.date
    days: List[WeekDayResponse]
    net_minutes: int
    net_minutes_text: str
    pause_minutes: int
    pause_minutes_text: str
    target_minutes: int
    target_minutes_text: str
    overtime_minutes: int
    overtime_minutes_text: str


class TopTaskResponse(BaseModel):
    title: str
    minutes: int
    minutes_text: str


class MonthlyReportResponse(BaseModel):
    month: str
    first_day: dt.date
    last_day: dt.date
    ticket_minutes: int
    ticket_minutes_text: str
    net_minutes: int
    net_minutes_text: str
    target_minutes: int
    target_minutes_text: str
    overtime_minutes: int
    overtime_minutes_text: str
    top_tasks: List[TopTaskResponse]


class SettingsResponse(BaseModel):
    sync_enabled: bool
    category_name: str
    reminder_lead_minutes: int
    date_time_format: str
    monday_target_minutes: int
    tuesday_target_minutes: int
    wednesday_target_minutes: int
    thursday_target_minutes: int
    friday_target_minutes: int
    saturday_target_minutes: int
    sunday_target_minutes: int
    last_error: str = ""


class SettingsUpdate(BaseModel):
    sync_enabled: Optional[bool] = None
    category_name: Optional[str] = None
    reminder_lead_minutes: Optional[int] = Field(default=None, ge=0)
    date_time_format: Optional[str] = None
    monday_target_minutes: Optional[int] = Field(default=None, ge=0)
    tuesday_target_minutes: Optional[int] = Field(default=None, ge=0)
    wednesday_target_minutes: Optional[int] = Field(default=None, ge=0)
    thursday_target_minutes: Optional[int] = Field(default=None, ge=0)
    friday_target_minutes: Optional[int] = None
    saturday_target_minutes: Optional[int] = Field(default=None, ge=0)
    sunday_target_minutes: Optional[int] = Field(default=None, ge=0)

    def updates(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SnoozeRequest(BaseModel):
    minutes: int = Field(default=5, ge=1)
