"""
Shared fixtures. Time is simulated with ManualClock; APScheduler runs paused
so no timer ever fires on its own during a test.
"""
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi.testclient import TestClient

from config import Settings
from notifications import AlertFeed, NotificationPresenter
from reminders import ReminderService
from scheduling import DueReminderEvaluator, NotificationScheduler
from storage import MemoryCareStore

UTC = ZoneInfo("UTC")

# Tuesday 2031-06-03 09:00 UTC; far enough ahead that armed jobs stay pending
DAY_D = datetime(2031, 6, 3, 9, 0, tzinfo=UTC)


class ManualClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class CountingAlertFeed(AlertFeed):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.permission_requests = 0

    async def request_permission(self) -> str:
        self.permission_requests += 1
        return await super().request_permission()


@pytest.fixture
def clock():
    return ManualClock(DAY_D)


@pytest.fixture
def store(clock):
    return MemoryCareStore(weekly_weekday=0, clock=clock)


@pytest_asyncio.fixture
async def aps():
    scheduler = AsyncIOScheduler(timezone=UTC)
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
def timers(aps, clock):
    return NotificationScheduler(aps, clock)


@pytest.fixture
def alerts(clock):
    return CountingAlertFeed(clock, permission="granted", timeout_seconds=30)


@pytest.fixture
def presenter(store, alerts, aps, clock):
    return NotificationPresenter(store, alerts, aps, clock, snooze_minutes=10)


@pytest.fixture
def reminder_service(store, timers, presenter, clock):
    return ReminderService(store, timers, presenter, clock)


@pytest.fixture
def evaluator(store, presenter, clock):
    return DueReminderEvaluator(store, presenter, clock)


@pytest.fixture
def settings():
    return Settings(
        app_timezone="UTC",
        alert_permission="granted",
        caregiver_access_code="1234",
        jwt_secret_key="test-secret",
        openai_api_key=None
    )


@pytest.fixture
def services(settings, clock):
    from server import CareServices
    return CareServices(settings, store=MemoryCareStore(weekly_weekday=0, clock=clock), clock=clock)


@pytest.fixture
def api_client(settings, services):
    """In-process API client; the app lifespan (scheduler, seeding) runs."""
    from server import create_app
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        yield client
