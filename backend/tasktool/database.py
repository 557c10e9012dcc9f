from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import models
from .config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = f"sqlite:///{settings.sqlite_path}"

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    future=True,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

# (table, column, DDL) added after the first schema version shipped.
ADDITIVE_COLUMNS = (
    ("work_days", "day_type", "VARCHAR(10) NOT NULL DEFAULT 'Normal'"),
    ("work_days", "is_br", "BOOLEAN NOT NULL DEFAULT 0"),
    ("work_days", "is_ho", "BOOLEAN NOT NULL DEFAULT 0"),
    ("task_segments", "note", "TEXT NOT NULL DEFAULT ''"),
    ("tasks", "ticket_seconds_booked", "INTEGER NOT NULL DEFAULT 0"),
)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _apply_sqlite_migrations(bind: Engine) -> list[str]:
    inspector = inspect(bind)
    statements: list[str] = []
    for table, column, ddl in ADDITIVE_COLUMNS:
        columns = {entry["name"].lower() for entry in inspector.get_columns(table)}
        if column not in columns:
            statements.append(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    with bind.begin() as connection:
        for statement in statements:
            connection.execute(text(statement))
        # Seconds-booked supersedes minutes-booked; derive it once for older rows.
        connection.execute(
            text(
                "UPDATE tasks SET ticket_seconds_booked = ticket_minutes_booked * 60 "
                "WHERE ticket_seconds_booked IS NULL OR ticket_seconds_booked <= 0"
            )
        )
    return statements


def init_db(bind: Engine = engine) -> bool:
    """Create missing tables and run additive migrations.

    Storage problems are logged; the caller keeps running with whatever state
    is available instead of aborting startup.
    """
    try:
        models.Base.metadata.create_all(bind=bind)
        applied = _apply_sqlite_migrations(bind)
    except SQLAlchemyError:
        logger.exception("Database initialisation failed for %s", bind.url)
        return False
    if applied:
        logger.info("Applied %d schema migration(s)", len(applied))
    return True
