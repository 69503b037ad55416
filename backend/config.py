import os
import logging
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings(BaseModel):
    mongo_url: Optional[str] = None
    db_name: str = "carecompanion"
    cors_origins: List[str] = ["*"]
    app_timezone: str = "UTC"
    weekly_reminder_weekday: str = "monday"
    reminder_poll_seconds: int = 60
    snooze_minutes: int = 10
    alert_timeout_seconds: int = 30
    alert_permission: str = "granted"  # granted, denied, unsupported
    caregiver_access_code: str = "1234"
    jwt_secret_key: str = "fallback_secret_key_change_in_production"
    caregiver_token_minutes: int = 60
    openai_api_key: Optional[str] = None
    transcription_model: str = "whisper-1"
    log_level: str = "INFO"

    @field_validator("weekly_reminder_weekday")
    @classmethod
    def _known_weekday(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in WEEKDAYS:
            raise ValueError(f"weekday must be one of {', '.join(WEEKDAYS)}")
        return cleaned

    @field_validator("alert_permission")
    @classmethod
    def _known_permission(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in {"granted", "denied", "unsupported"}:
            raise ValueError("alert permission must be granted, denied or unsupported")
        return cleaned

    @property
    def weekly_weekday_index(self) -> int:
        return WEEKDAYS.index(self.weekly_reminder_weekday)


class SystemClock:
    """Wall clock in the app's configured timezone."""

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)


def load_settings() -> Settings:
    """Read settings from the environment (and backend/.env)."""
    env = os.environ
    values = {
        "mongo_url": env.get("MONGO_URL") or None,
        "db_name": env.get("DB_NAME", "carecompanion"),
        "cors_origins": [o.strip() for o in env.get("CORS_ORIGINS", "*").split(",") if o.strip()],
        "app_timezone": env.get("APP_TIMEZONE", "UTC"),
        "weekly_reminder_weekday": env.get("WEEKLY_REMINDER_WEEKDAY", "monday"),
        "reminder_poll_seconds": int(env.get("REMINDER_POLL_SECONDS", "60")),
        "snooze_minutes": int(env.get("SNOOZE_MINUTES", "10")),
        "alert_timeout_seconds": int(env.get("ALERT_TIMEOUT_SECONDS", "30")),
        "alert_permission": env.get("ALERT_PERMISSION", "granted"),
        "caregiver_access_code": env.get("CAREGIVER_ACCESS_CODE", "1234"),
        "jwt_secret_key": env.get("JWT_SECRET_KEY", "fallback_secret_key_change_in_production"),
        "caregiver_token_minutes": int(env.get("CAREGIVER_TOKEN_MINUTES", "60")),
        "openai_api_key": env.get("OPENAI_API_KEY") or None,
        "transcription_model": env.get("TRANSCRIPTION_MODEL", "whisper-1"),
        "log_level": env.get("LOG_LEVEL", "INFO"),
    }
    return Settings(**values)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
