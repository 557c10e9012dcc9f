from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_FRIDAY_TARGET_MINUTES = 300

WEEKDAY_FIELDS = (
    "monday_target_minutes",
    "tuesday_target_minutes",
    "wednesday_target_minutes",
    "thursday_target_minutes",
    "friday_target_minutes",
    "saturday_target_minutes",
    "sunday_target_minutes",
)


class AppSettings(BaseModel):
    """User settings, stored as a flat JSON object with the legacy key names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sync_enabled: bool = Field(default=True, alias="OutlookSyncEnabled")
    category_name: str = Field(default="FocusBlock", alias="OutlookCategoryName")
    reminder_lead_minutes: int = Field(default=2, alias="ReminderLeadMinutes")
    date_time_format: str = Field(default="yyyy-MM-dd HH:mm", alias="DateTimeFormat")

    monday_target_minutes: int = Field(default=480, alias="MondayTargetMinutes")
    tuesday_target_minutes: int = Field(default=480, alias="TuesdayTargetMinutes")
    wednesday_target_minutes: int = Field(default=480, alias="WednesdayTargetMinutes")
    thursday_target_minutes: int = Field(default=480, alias="ThursdayTargetMinutes")
    friday_target_minutes: int = Field(default=DEFAULT_FRIDAY_TARGET_MINUTES, alias="FridayTargetMinutes")
    saturday_target_minutes: int = Field(default=0, alias="SaturdayTargetMinutes")
    sunday_target_minutes: int = Field(default=0, alias="SundayTargetMinutes")

    @model_validator(mode="after")
    def _normalize(self) -> "AppSettings":
        # Legacy configs were written without a Friday target.
        if self.friday_target_minutes <= 0:
            self.friday_target_minutes = DEFAULT_FRIDAY_TARGET_MINUTES
        return self

    def target_minutes_for(self, weekday: int) -> int:
        """Target minutes for a ``date.weekday()`` value (Monday == 0)."""
        if 0 <= weekday < len(WEEKDAY_FIELDS):
            return getattr(self, WEEKDAY_FIELDS[weekday])
        return 0


class RuntimeState:
    """Process-wide mutable state: the loaded AppSettings and the last error."""

    def __init__(self, settings_path: Path):
        self._lock = RLock()
        self.settings_path = Path(settings_path)
        self._settings = AppSettings()
        self._last_error = ""

    @property
    def settings(self) -> AppSettings:
        with self._lock:
            return self._settings

    @property
    def last_error(self) -> str:
        with self._lock:
            return self._last_error

    @last_error.setter
    def last_error(self, value: Optional[str]) -> None:
        with self._lock:
            self._last_error = value or ""

    def load(self) -> AppSettings:
        with self._lock:
            if not self.settings_path.exists():
                self._settings = AppSettings()
                self.save()
                return self._settings
            try:
                raw = self.settings_path.read_text(encoding="utf-8")
                self._settings = AppSettings.model_validate(json.loads(raw) or {})
            except (OSError, ValueError, ValidationError) as exc:
                logger.error("Settings load failed: %s", exc)
                self._settings = AppSettings()
            return self._settings

    def save(self) -> bool:
        with self._lock:
            payload = self._settings.model_dump(by_alias=True)
            try:
                self.settings_path.parent.mkdir(parents=True, exist_ok=True)
                self.settings_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            except OSError as exc:
                logger.error("Settings save failed: %s", exc)
                return False
            return True

    def apply(self, updates: Dict[str, Any]) -> AppSettings:
        """Merge updates (field names or legacy keys), normalise and persist."""
        with self._lock:
            merged = self._settings.model_dump()
            merged.update({key: value for key, value in updates.items() if value is not None})
            self._settings = AppSettings.model_validate(merged)
            self.save()
            return self._settings

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = self._settings.model_dump()
            data["last_error"] = self._last_error
            return data
