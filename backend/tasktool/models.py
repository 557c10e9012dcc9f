from __future__ import annotations

import datetime as dt
import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


UTC = dt.timezone.utc


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _new_task_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, enum.Enum):
    PLANNED = "Planned"
    RUNNING = "Running"
    DONE = "Done"
    CANCELLED = "Cancelled"


class DayType(str, enum.Enum):
    NORMAL = "Normal"
    AM = "AM"  # half day
    UL = "UL"  # vacation

    @property
    def zeroes_target(self) -> bool:
        return self in (DayType.AM, DayType.UL)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_new_task_id)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    ticket_url = Column(Text, nullable=False, default="")
    start_local = Column(DateTime(), nullable=True, index=True)
    end_local = Column(DateTime(), nullable=True)
    status = Column(String(20), nullable=False, default=TaskStatus.PLANNED.value, index=True)
    priority = Column(Integer, nullable=True)
    tags = Column(Text, nullable=False, default="")
    calendar_entry_id = Column(String(255), nullable=False, default="")
    ticket_minutes_booked = Column(Integer, nullable=False, default=0)
    ticket_seconds_booked = Column(Integer, nullable=False, default=0)
    created_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    time_logs = relationship(
        "TimeLog",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TimeLog.id",
    )
    segments = relationship(
        "TaskSegment",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TaskSegment.start_local",
    )

    @property
    def task_status(self) -> TaskStatus:
        try:
            return TaskStatus(self.status)
        except ValueError:
            return TaskStatus.PLANNED

    def touch(self) -> None:
        self.updated_utc = utcnow()

    def book_ticket_minutes(self, minutes: int) -> None:
        # Negative corrections are allowed and never clamped.
        self.ticket_minutes_booked = (self.ticket_minutes_booked or 0) + minutes
        self.ticket_seconds_booked = (self.ticket_seconds_booked or 0) + minutes * 60


class TimeLog(Base):
    __tablename__ = "time_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    start_utc = Column(DateTime(timezone=True), nullable=False)
    end_utc = Column(DateTime(timezone=True), nullable=True)
    note = Column(Text, nullable=False, default="")

    task = relationship("Task", back_populates="time_logs")

    @property
    def is_open(self) -> bool:
        return self.end_utc is None

    def close(self, now: dt.datetime, note: str) -> None:
        self.end_utc = _as_utc(now)
        self.note = note

    def elapsed(self, now: dt.datetime) -> dt.timedelta:
        start = _as_utc(self.start_utc)
        end = _as_utc(self.end_utc) if self.end_utc else _as_utc(now)
        if end <= start:
            return dt.timedelta(0)
        return end - start


class TaskSegment(Base):
    __tablename__ = "task_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    start_local = Column(DateTime(), nullable=False)
    end_local = Column(DateTime(), nullable=False)
    planned_minutes = Column(Integer, nullable=False, default=0)
    note = Column(Text, nullable=False, default="")
    calendar_entry_id = Column(String(255), nullable=False, default="")

    task = relationship("Task", back_populates="segments")

    def recompute_planned_minutes(self) -> None:
        if self.start_local is None or self.end_local is None:
            self.planned_minutes = 0
            return
        self.planned_minutes = int((self.end_local - self.start_local).total_seconds() / 60)

    @property
    def validation_hint(self) -> str:
        if self.start_local is None:
            return "Datum muss gesetzt sein."
        if self.end_local is None:
            return "Endzeit darf nicht leer sein."
        if self.start_local >= self.end_local:
            return "Startzeit muss vor Endzeit liegen."
        return ""

    @property
    def is_valid(self) -> bool:
        return not self.validation_hint


class WorkDay(Base):
    __tablename__ = "work_days"

    day = Column(String(10), primary_key=True)  # yyyy-MM-dd
    come_local = Column(DateTime(), nullable=True)
    go_local = Column(DateTime(), nullable=True)
    day_type = Column(String(10), nullable=False, default=DayType.NORMAL.value)
    is_br = Column(Boolean, nullable=False, default=False)
    is_ho = Column(Boolean, nullable=False, default=False)

    @property
    def kind(self) -> DayType:
        try:
            return DayType(self.day_type)
        except ValueError:
            return DayType.NORMAL

    @property
    def date(self) -> dt.date:
        return dt.date.fromisoformat(self.day)


class Break(Base):
    __tablename__ = "breaks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(String(10), nullable=False, index=True)
    start_local = Column(DateTime(), nullable=False)
    end_local = Column(DateTime(), nullable=True)
    note = Column(Text, nullable=False, default="pause")

    @property
    def is_open(self) -> bool:
        return self.end_local is None
