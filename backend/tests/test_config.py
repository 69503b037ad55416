import pytest
from pydantic import ValidationError

from config import Settings, load_settings


def test_defaults():
    settings = Settings()
    assert settings.snooze_minutes == 10
    assert settings.alert_timeout_seconds == 30
    assert settings.weekly_weekday_index == 0
    assert settings.mongo_url is None


def test_load_from_environment(monkeypatch):
    monkeypatch.setenv("MONGO_URL", "")
    monkeypatch.setenv("WEEKLY_REMINDER_WEEKDAY", "Friday")
    monkeypatch.setenv("CORS_ORIGINS", "http://localhost:3000, https://care.example.org")
    monkeypatch.setenv("SNOOZE_MINUTES", "5")
    monkeypatch.setenv("ALERT_PERMISSION", "denied")

    settings = load_settings()
    assert settings.mongo_url is None
    assert settings.weekly_weekday_index == 4
    assert settings.cors_origins == ["http://localhost:3000", "https://care.example.org"]
    assert settings.snooze_minutes == 5
    assert settings.alert_permission == "denied"


def test_rejects_unknown_weekday():
    with pytest.raises(ValidationError):
        Settings(weekly_reminder_weekday="someday")


def test_rejects_unknown_permission():
    with pytest.raises(ValidationError):
        Settings(alert_permission="maybe")
