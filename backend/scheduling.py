"""
Reminder timing: per-reminder notification timers and the polling
due-reminder evaluator.

Timers are APScheduler jobs. ``NotificationScheduler`` owns the mapping from
reminder id to job and always cancels before arming, so a reminder never has
more than one live timer.
"""

import inspect
import logging
from datetime import date, datetime, time as dt_time, timedelta
from typing import Awaitable, Callable, Dict, Optional, Union

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from models import normalize_hhmm, parse_yyyy_mm_dd
from storage import StoreError, reminder_eligible_on, reminder_pending

logger = logging.getLogger(__name__)

REPEAT_INTERVALS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

POLL_JOB_ID = "due-reminder-poll"

ReminderCallback = Callable[[], Union[None, Awaitable[None]]]


def minute_key(moment: datetime) -> str:
    return moment.strftime("%H:%M")


def next_fire_time(
    time_str: str,
    frequency: str,
    now: datetime,
    on_date: Optional[date] = None
) -> Optional[datetime]:
    """First moment a reminder should fire, or None for a one-time reminder
    whose moment has already passed.

    Repeating reminders whose time has passed today roll to tomorrow.
    """
    hour, minute = (int(part) for part in normalize_hhmm(time_str).split(":"))
    day = on_date if (frequency == "once" and on_date) else now.date()
    target = datetime.combine(day, dt_time(hour, minute), tzinfo=now.tzinfo)
    if target <= now:
        if frequency == "once":
            return None
        target += timedelta(days=1)
    return target


class NotificationScheduler:
    def __init__(self, scheduler: AsyncIOScheduler, clock):
        self._scheduler = scheduler
        self._clock = clock
        self._jobs: Dict[int, Job] = {}

    def schedule(
        self,
        reminder_id: int,
        time: str,
        frequency: str,
        callback: ReminderCallback,
        on_date: Optional[date] = None
    ) -> Optional[datetime]:
        """Arm the timer for a reminder, replacing any existing one.

        Returns the first fire time, or None when nothing was armed.
        """
        self.cancel(reminder_id)

        target = next_fire_time(time, frequency, self._clock.now(), on_date)
        if target is None:
            logger.debug(f"Reminder {reminder_id} ({frequency} at {time}) is in the past, not armed")
            return None

        if frequency == "once":
            trigger = DateTrigger(run_date=target)
        else:
            trigger = IntervalTrigger(
                seconds=int(REPEAT_INTERVALS[frequency].total_seconds()),
                start_date=target,
                timezone=target.tzinfo
            )

        job = self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[reminder_id, frequency, callback],
            id=f"reminder:{reminder_id}",
            name=f"reminder:{reminder_id}:{frequency}",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=60
        )
        self._jobs[reminder_id] = job
        logger.debug(f"Armed reminder {reminder_id} ({frequency}) for {target.isoformat()}")
        return target

    async def _fire(self, reminder_id: int, frequency: str, callback: ReminderCallback):
        if frequency == "once":
            self._jobs.pop(reminder_id, None)
        logger.info(f"Reminder {reminder_id} timer fired ({frequency})")
        result = callback()
        if inspect.isawaitable(result):
            await result

    def cancel(self, reminder_id: int) -> bool:
        job = self._jobs.pop(reminder_id, None)
        if job is None:
            return False
        try:
            job.remove()
        except JobLookupError:
            # one-shot job already ran or was dropped as misfired
            pass
        logger.debug(f"Cancelled timer for reminder {reminder_id}")
        return True

    def cancel_all(self) -> int:
        reminder_ids = list(self._jobs)
        for reminder_id in reminder_ids:
            self.cancel(reminder_id)
        return len(reminder_ids)

    def is_scheduled(self, reminder_id: int) -> bool:
        return reminder_id in self._jobs

    def scheduled_ids(self):
        return sorted(self._jobs)

    def job_for(self, reminder_id: int) -> Optional[Job]:
        job = self._jobs.get(reminder_id)
        if job is None:
            return None
        return self._scheduler.get_job(job.id)

    def next_fire_time(self, reminder_id: int) -> Optional[datetime]:
        job = self.job_for(reminder_id)
        return getattr(job, "next_run_time", None) if job else None


def reminder_fire_date(reminder: dict) -> Optional[date]:
    if reminder.get("frequency") != "once":
        return None
    return parse_yyyy_mm_dd(reminder.get("date"))


class DueReminderEvaluator:
    """Polls today's reminders and surfaces the one due this minute.

    Only one reminder is surfaced at a time; others due in the same minute
    wait for a later tick. A reminder is not surfaced while it is snoozed, nor
    a second time in a minute it was already shown (by this poll or by its
    timer).
    """

    def __init__(self, store, presenter, clock):
        self.store = store
        self.presenter = presenter
        self.clock = clock

    def is_due(self, reminder: dict, now: datetime) -> bool:
        if not reminder_pending(reminder):
            return False
        if not reminder_eligible_on(reminder, now.date(), self.store.weekly_weekday):
            return False
        return reminder.get("time") == minute_key(now)

    async def tick(self) -> Optional[dict]:
        now = self.clock.now()
        if self.presenter.active is not None:
            return None

        try:
            reminders = await self.store.list_today_reminders(now.date())
        except StoreError as e:
            logger.error(f"Due-reminder check failed: {e}")
            return None

        for reminder in reminders:
            if not self.is_due(reminder, now):
                continue
            if self.presenter.is_snoozed(reminder["id"]) or self.presenter.shown_this_minute(reminder["id"], now):
                continue
            await self.presenter.present(reminder)
            return reminder
        return None

    def start_polling(self, scheduler: AsyncIOScheduler, interval_seconds: int = 60):
        scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=POLL_JOB_ID,
            name="due reminder poll",
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
        logger.info(f"Polling for due reminders every {interval_seconds}s")
