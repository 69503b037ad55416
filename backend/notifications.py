"""
Surfacing due reminders to the user.

``NotificationPresenter`` keeps the single "currently surfaced" reminder
(the banner) and pushes an alert through an alert channel. The default
channel, ``AlertFeed``, holds alerts in memory for the browser to poll and
display as OS notifications; alerts expire after a fixed timeout.
"""

import inspect
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Union

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from storage import NotFoundError, REMINDERS, StoreError, reminder_pending

logger = logging.getLogger(__name__)

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_UNSUPPORTED = "unsupported"
PERMISSION_DEFAULT = "default"

AcknowledgeCallback = Callable[[], Union[None, Awaitable[None]]]


class AlertFeed:
    """In-memory alert channel polled by the UI."""

    def __init__(self, clock, permission: str = PERMISSION_GRANTED, timeout_seconds: int = 30):
        self.clock = clock
        self.permission = permission
        self.timeout = timedelta(seconds=timeout_seconds)
        self._alerts: List[dict] = []
        self._callbacks: Dict[str, AcknowledgeCallback] = {}

    async def request_permission(self) -> str:
        return self.permission

    def report_permission(self, permission: str):
        """Record the permission state the browser reported."""
        self.permission = permission

    def show(self, title: str, body: str, on_acknowledge: Optional[AcknowledgeCallback] = None,
             tag: Optional[str] = None) -> dict:
        now = self.clock.now()
        if tag:
            # same tag replaces the previous alert, like browser notifications
            self.dismiss(tag=tag)
        alert = {
            "id": f"alert_{uuid.uuid4().hex[:12]}",
            "title": title,
            "body": body,
            "tag": tag,
            "created_at": now.isoformat(),
            "expires_at": (now + self.timeout).isoformat(),
        }
        self._alerts.append(alert)
        if on_acknowledge is not None:
            self._callbacks[alert["id"]] = on_acknowledge
        return dict(alert)

    def live_alerts(self) -> List[dict]:
        now = self.clock.now()
        expired = [a for a in self._alerts if datetime.fromisoformat(a["expires_at"]) <= now]
        for alert in expired:
            self._drop(alert["id"])
        return [dict(a) for a in self._alerts]

    def dismiss(self, alert_id: Optional[str] = None, tag: Optional[str] = None) -> int:
        doomed = [
            a["id"] for a in self._alerts
            if (alert_id and a["id"] == alert_id) or (tag and a["tag"] == tag)
        ]
        for doomed_id in doomed:
            self._drop(doomed_id)
        return len(doomed)

    async def acknowledge(self, alert_id: str) -> bool:
        """User clicked an alert: close it and run its acknowledge action."""
        if not any(a["id"] == alert_id for a in self.live_alerts()):
            return False
        callback = self._callbacks.get(alert_id)
        self._drop(alert_id)
        if callback is not None:
            result = callback()
            if inspect.isawaitable(result):
                await result
        return True

    def _drop(self, alert_id: str):
        self._alerts = [a for a in self._alerts if a["id"] != alert_id]
        self._callbacks.pop(alert_id, None)


def reminder_alert_body(reminder: dict) -> str:
    body = f"Time to: {reminder['title']}"
    if reminder.get("description"):
        body += f" - {reminder['description']}"
    return body


class NotificationPresenter:
    """Banner state machine: None -> Active -> None (acknowledge/snooze/dismiss)."""

    def __init__(self, store, channel, scheduler: AsyncIOScheduler, clock, snooze_minutes: int = 10):
        self.store = store
        self.channel = channel
        self.scheduler = scheduler
        self.clock = clock
        self.snooze_delay = timedelta(minutes=snooze_minutes)
        self.active: Optional[dict] = None
        self.active_since: Optional[datetime] = None
        self.permission: Optional[str] = None
        self._snoozes: Dict[int, Job] = {}
        self._last_shown: Dict[int, datetime] = {}

    async def request_permission(self, refresh: bool = False) -> str:
        """Ask the channel once per session; ``refresh`` re-asks after the
        browser reported a new state."""
        if self.permission is None or refresh:
            self.permission = await self.channel.request_permission()
            logger.info(f"Notification permission: {self.permission}")
        return self.permission

    async def present(self, reminder: dict, title: str = "Reminder") -> bool:
        if self.active is not None:
            if self.active["id"] != reminder["id"]:
                logger.info(f"Reminder {reminder['id']} deferred, {self.active['id']} is on screen")
            return False

        self.active = reminder
        self.active_since = self.clock.now()
        self._last_shown[reminder["id"]] = self.active_since
        logger.info(f"Surfacing reminder {reminder['id']}: {reminder['title']}")

        permission = await self.request_permission()
        if permission != PERMISSION_GRANTED:
            logger.info(f"Alert for reminder {reminder['id']} not shown (permission {permission})")
            return True

        reminder_id = reminder["id"]
        self.channel.show(
            title,
            reminder_alert_body(reminder),
            on_acknowledge=lambda: self.acknowledge(reminder_id),
            tag=f"reminder:{reminder_id}"
        )
        return True

    def _clear(self, reminder_id: int):
        if self.active is not None and self.active["id"] == reminder_id:
            self.active = None
            self.active_since = None
        self.channel.dismiss(tag=f"reminder:{reminder_id}")

    async def acknowledge(self, reminder_id: int) -> dict:
        updated = await self.store.update_reminder(reminder_id, {"is_completed": True})
        self.cancel_snooze(reminder_id)
        self._clear(reminder_id)
        logger.info(f"Reminder {reminder_id} acknowledged")
        return updated

    async def snooze(self, reminder_id: int) -> datetime:
        reminder = await self.store.get_reminder(reminder_id)
        if reminder is None:
            raise NotFoundError(REMINDERS, reminder_id)

        self._clear(reminder_id)
        self.cancel_snooze(reminder_id)
        run_at = self.clock.now() + self.snooze_delay
        self._snoozes[reminder_id] = self.scheduler.add_job(
            self.resurface,
            trigger=DateTrigger(run_date=run_at),
            args=[reminder_id],
            id=f"snooze:{reminder_id}",
            name=f"snooze:{reminder_id}",
            replace_existing=True,
            misfire_grace_time=60
        )
        logger.info(f"Reminder {reminder_id} snoozed until {run_at.isoformat()}")
        return run_at

    async def resurface(self, reminder_id: int) -> bool:
        """Snooze expiry: show the reminder again if it is still pending."""
        self._snoozes.pop(reminder_id, None)
        try:
            reminder = await self.store.get_reminder(reminder_id)
        except StoreError as e:
            logger.error(f"Snoozed reminder {reminder_id} could not be re-read: {e}")
            return False
        if not reminder_pending(reminder):
            logger.info(f"Snoozed reminder {reminder_id} no longer pending, not re-shown")
            return False
        return await self.present(reminder, title="Reminder Snoozed")

    def dismiss(self) -> Optional[int]:
        if self.active is None:
            return None
        reminder_id = self.active["id"]
        self._clear(reminder_id)
        return reminder_id

    def cancel_snooze(self, reminder_id: int) -> bool:
        job = self._snoozes.pop(reminder_id, None)
        if job is None:
            return False
        try:
            job.remove()
        except JobLookupError:
            # snooze already fired
            pass
        return True

    def is_snoozed(self, reminder_id: int) -> bool:
        return reminder_id in self._snoozes

    def shown_this_minute(self, reminder_id: int, now: datetime) -> bool:
        shown = self._last_shown.get(reminder_id)
        if shown is None:
            return False
        return shown.replace(second=0, microsecond=0) == now.replace(second=0, microsecond=0)

    def snoozed_until(self, reminder_id: int) -> Optional[datetime]:
        job = self._snoozes.get(reminder_id)
        if job is None:
            return None
        current = self.scheduler.get_job(job.id)
        return getattr(current, "next_run_time", None) if current else None

    def forget(self, reminder_id: int):
        """Drop all presentation state for a deleted or deactivated reminder."""
        self.cancel_snooze(reminder_id)
        self._clear(reminder_id)

    def cancel_all(self):
        for reminder_id in list(self._snoozes):
            self.cancel_snooze(reminder_id)
        self.active = None
        self.active_since = None
