import logging
from functools import partial
from typing import List, Optional

from models import ReminderCreate, ReminderUpdate
from scheduling import NotificationScheduler, reminder_fire_date
from storage import NotFoundError, REMINDERS, StoreError

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = {"time", "frequency", "date", "is_active", "is_completed"}


class ReminderService:
    """Keeps reminder timers and the on-screen banner in step with store changes."""

    def __init__(self, store, scheduler: NotificationScheduler, presenter, clock):
        self.store = store
        self.scheduler = scheduler
        self.presenter = presenter
        self.clock = clock

    async def list(self) -> List[dict]:
        return await self.store.list_reminders()

    async def list_today(self) -> List[dict]:
        return await self.store.list_today_reminders(self.clock.now().date())

    async def create(self, reminder: ReminderCreate) -> dict:
        doc = await self.store.create_reminder(reminder.model_dump())
        self.arm(doc)
        logger.info(f"Created reminder {doc['id']}: {doc['title']} ({doc['frequency']} at {doc['time']})")
        return doc

    async def update(self, reminder_id: int, reminder: ReminderUpdate) -> dict:
        existing = await self.store.get_reminder(reminder_id)
        if existing is None:
            raise NotFoundError(REMINDERS, reminder_id)

        changes = {k: v for k, v in reminder.model_dump().items() if v is not None}
        merged = {**existing, **changes}
        # raises pydantic.ValidationError before anything is written
        ReminderCreate(
            title=merged["title"],
            description=merged.get("description"),
            time=merged["time"],
            frequency=merged["frequency"],
            date=merged.get("date")
        )

        updated = await self.store.update_reminder(reminder_id, changes)

        if not updated.get("is_active", True) or changes.get("is_completed"):
            self.presenter.forget(reminder_id)
        if SCHEDULE_FIELDS & changes.keys():
            self.arm(updated)
        return updated

    async def delete(self, reminder_id: int) -> bool:
        self.scheduler.cancel(reminder_id)
        self.presenter.forget(reminder_id)
        deleted = await self.store.delete_reminder(reminder_id)
        if deleted:
            logger.info(f"Deleted reminder {reminder_id}")
        return deleted

    def arm(self, reminder: dict):
        reminder_id = reminder["id"]
        if not reminder.get("is_active", True):
            self.scheduler.cancel(reminder_id)
            return None
        if reminder["frequency"] == "once" and reminder.get("is_completed"):
            self.scheduler.cancel(reminder_id)
            return None
        return self.scheduler.schedule(
            reminder_id,
            reminder["time"],
            reminder["frequency"],
            partial(self.on_timer, reminder_id),
            on_date=reminder_fire_date(reminder)
        )

    async def arm_all(self) -> int:
        armed = 0
        for reminder in await self.store.list_reminders():
            if self.arm(reminder) is not None:
                armed += 1
        logger.info(f"Armed {armed} reminder timers")
        return armed

    async def on_timer(self, reminder_id: int) -> bool:
        """Timer callback; re-reads the reminder so late timers are harmless.

        Completion covers one occurrence: a completed one-time reminder stays
        quiet, while a repeating reminder is reopened (``is_completed`` reset)
        when its next occurrence fires, so the poll and snooze see it pending.
        """
        try:
            reminder = await self.store.get_reminder(reminder_id)
            if reminder is None or not reminder.get("is_active", True):
                logger.info(f"Timer for reminder {reminder_id} fired after delete/deactivate, ignoring")
                self.scheduler.cancel(reminder_id)
                return False
            if reminder.get("is_completed"):
                if reminder["frequency"] == "once":
                    return False
                reminder = await self.store.update_reminder(reminder_id, {"is_completed": False})
                logger.info(f"Reminder {reminder_id} reopened for its next occurrence")
        except StoreError as e:
            logger.error(f"Timer for reminder {reminder_id} could not read the store: {e}")
            return False
        return await self.presenter.present(reminder)

    def next_fire_time(self, reminder_id: int):
        return self.scheduler.next_fire_time(reminder_id)

    def shutdown(self) -> Optional[int]:
        cancelled = self.scheduler.cancel_all()
        self.presenter.cancel_all()
        return cancelled
