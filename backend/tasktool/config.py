from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """Process configuration. User-editable options live in ``state.AppSettings``."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="TT_", case_sensitive=False, extra="ignore")

    app_name: str = "TaskTool"
    host: str = os.getenv("TT_HOST", "127.0.0.1")
    port: int = int(os.getenv("TT_PORT", "8080"))

    sqlite_path: Path = Path(os.getenv("TT_SQLITE_PATH", "./data/tasktool.db"))
    settings_file: Path = Path(os.getenv("TT_SETTINGS_FILE", "./data/settings.json"))
    log_file: Path = Path(os.getenv("TT_LOG_FILE", "./data/logs.txt"))
    log_level: str = os.getenv("TT_LOG_LEVEL", "INFO")

    timezone: str = os.getenv("TZ", "Europe/Berlin")

    caldav_url: Optional[str] = os.getenv("TT_CALDAV_URL")
    caldav_user: Optional[str] = os.getenv("TT_CALDAV_USER")
    caldav_password: Optional[str] = os.getenv("TT_CALDAV_PASSWORD")
    caldav_calendar: Optional[str] = os.getenv("TT_CALDAV_CALENDAR")
    calendar_timeout_seconds: float = float(os.getenv("TT_CALENDAR_TIMEOUT", "30"))

    reminder_interval_seconds: float = float(os.getenv("TT_REMINDER_INTERVAL", "30"))
    timer_refresh_seconds: float = float(os.getenv("TT_TIMER_REFRESH", "1"))
    background_jobs: bool = os.getenv("TT_BACKGROUND_JOBS", "true").lower() == "true"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return str(value or "INFO").upper()

    @property
    def caldav_configured(self) -> bool:
        return bool(self.caldav_url and self.caldav_user and self.caldav_password)


def configure_logging(config: Settings) -> None:
    root = logging.getLogger()
    if any(getattr(handler, "_tasktool", False) for handler in root.handlers):
        return
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        handlers.append(logging.FileHandler(config.log_file, encoding="utf-8"))
    except OSError:
        # Read-only install directories still get console output.
        pass
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._tasktool = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(config.log_level)


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
settings.settings_file.parent.mkdir(parents=True, exist_ok=True)
settings.log_file.parent.mkdir(parents=True, exist_ok=True)
