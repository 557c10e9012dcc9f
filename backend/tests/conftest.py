from __future__ import annotations

import datetime as dt
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import pytest

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="tasktool-tests-"))
os.environ.setdefault("TT_SQLITE_PATH", str(_TEST_ROOT / "app.db"))
os.environ.setdefault("TT_SETTINGS_FILE", str(_TEST_ROOT / "settings.json"))
os.environ.setdefault("TT_LOG_FILE", str(_TEST_ROOT / "logs.txt"))
os.environ["TT_BACKGROUND_JOBS"] = "false"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from tasktool.calendar_gateway import CalendarGateway  # noqa: E402
from tasktool.database import get_db, init_db  # noqa: E402
from tasktool.events import get_event_bus  # noqa: E402
from tasktool.main import app  # noqa: E402
from tasktool.reminders import ReminderService  # noqa: E402
from tasktool.state import RuntimeState  # noqa: E402


class FakeCalendarBackend:
    """Records every call; ``fail_calls`` holds 1-based upsert numbers that raise."""

    def __init__(self) -> None:
        self.upserts: list[dict] = []
        self.deletes: list[str] = []
        self.blocks: dict[str, dict] = {}
        self.fail_calls: set[int] = set()
        self.fail_deletes: set[str] = set()
        self.available = True
        self._counter = 0

    @property
    def call_count(self) -> int:
        return len(self.upserts) + len(self.deletes)

    def is_available(self) -> bool:
        return self.available

    def upsert(
        self,
        entry_id: str,
        title: str,
        body: str,
        start: dt.datetime,
        end: dt.datetime,
        category: str,
    ) -> str:
        self.upserts.append(
            {
                "entry_id": entry_id,
                "title": title,
                "body": body,
                "start": start,
                "end": end,
                "category": category,
            }
        )
        if len(self.upserts) in self.fail_calls:
            raise RuntimeError("Kalender nicht erreichbar")
        if not entry_id or entry_id not in self.blocks:
            self._counter += 1
            entry_id = f"block-{self._counter}"
        self.blocks[entry_id] = {"title": title, "start": start, "end": end}
        return entry_id

    def delete(self, entry_id: str) -> None:
        self.deletes.append(entry_id)
        if entry_id in self.fail_deletes:
            raise RuntimeError("Löschen abgelehnt")
        self.blocks.pop(entry_id, None)


@pytest.fixture()
def engine(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    assert init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_maker(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def session_factory(session_maker):
    @contextmanager
    def factory() -> Generator[Session, None, None]:
        db = session_maker()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return factory


@pytest.fixture()
def session(session_maker) -> Generator[Session, None, None]:
    db = session_maker()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def state(tmp_path: Path) -> RuntimeState:
    runtime_state = RuntimeState(tmp_path / "settings.json")
    runtime_state.load()
    return runtime_state


@pytest.fixture()
def calendar_backend() -> FakeCalendarBackend:
    return FakeCalendarBackend()


@pytest.fixture()
def gateway(state: RuntimeState, calendar_backend: FakeCalendarBackend) -> Generator[CalendarGateway, None, None]:
    calendar = CalendarGateway(state, calendar_backend, timeout_seconds=5)
    yield calendar
    calendar.shutdown()


@pytest.fixture(autouse=True)
def event_bus():
    bus = get_event_bus()
    bus.clear()
    yield bus
    bus.clear()


@pytest.fixture()
def client(
    session: Session,
    state: RuntimeState,
    gateway: CalendarGateway,
    session_factory,
) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield session
        finally:
            session.close()

    previous = (app.state.runtime_state, app.state.calendar, app.state.reminders)
    app.state.runtime_state = state
    app.state.calendar = gateway
    app.state.reminders = ReminderService(state, session_factory=session_factory)
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.runtime_state, app.state.calendar, app.state.reminders = previous


@pytest.fixture()
def sample_day() -> dt.date:
    # A Wednesday.
    return dt.date(2024, 1, 17)
