"""
ReminderService tests: store changes keep timers and the banner in step.
"""
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from models import ReminderCreate, ReminderUpdate
from reminders import ReminderService
from storage import NotFoundError, StoreError
from conftest import DAY_D, UTC


def new_reminder(**overrides):
    fields = {"title": "Take pills", "time": "10:00", "frequency": "daily"}
    fields.update(overrides)
    return ReminderCreate(**fields)


class TestReminderLifecycle:
    """Create / update / delete through the service"""

    async def test_create_arms_timer(self, reminder_service, timers):
        created = await reminder_service.create(new_reminder())
        assert timers.is_scheduled(created["id"])
        assert reminder_service.next_fire_time(created["id"]) == datetime(2031, 6, 3, 10, 0, tzinfo=UTC)
        print("✓ New reminder armed for its next occurrence")

    async def test_create_once_in_past_is_stored_not_armed(self, reminder_service, store, timers):
        created = await reminder_service.create(new_reminder(time="08:00", frequency="once", date="2031-06-03"))
        assert await store.get_reminder(created["id"]) is not None
        assert not timers.is_scheduled(created["id"])

    async def test_create_once_on_future_date(self, reminder_service):
        created = await reminder_service.create(new_reminder(time="08:00", frequency="once", date="2031-06-07"))
        assert reminder_service.next_fire_time(created["id"]) == datetime(2031, 6, 7, 8, 0, tzinfo=UTC)

    async def test_update_time_rearms(self, reminder_service, aps):
        created = await reminder_service.create(new_reminder())
        updated = await reminder_service.update(created["id"], ReminderUpdate(time="11:30"))
        assert updated["time"] == "11:30"
        assert reminder_service.next_fire_time(created["id"]) == datetime(2031, 6, 3, 11, 30, tzinfo=UTC)
        assert len([j for j in aps.get_jobs() if j.id.startswith("reminder:")]) == 1

    async def test_deactivate_cancels_and_forgets(self, reminder_service, presenter, timers, store):
        created = await reminder_service.create(new_reminder())
        await presenter.present(created)
        await reminder_service.update(created["id"], ReminderUpdate(is_active=False))
        assert not timers.is_scheduled(created["id"])
        assert presenter.active is None

        await reminder_service.update(created["id"], ReminderUpdate(is_active=True))
        assert timers.is_scheduled(created["id"])

    async def test_completing_once_cancels_timer(self, reminder_service, timers):
        created = await reminder_service.create(new_reminder(frequency="once", date="2031-06-03"))
        assert timers.is_scheduled(created["id"])
        await reminder_service.update(created["id"], ReminderUpdate(is_completed=True))
        assert not timers.is_scheduled(created["id"])

    async def test_invalid_merge_leaves_record_untouched(self, reminder_service, store, timers):
        created = await reminder_service.create(new_reminder())
        with pytest.raises(ValidationError):
            await reminder_service.update(created["id"], ReminderUpdate(frequency="once"))
        stored = await store.get_reminder(created["id"])
        assert stored["frequency"] == "daily"
        assert timers.is_scheduled(created["id"])
        print("✓ Invalid update rejected without side effects")

    async def test_update_missing(self, reminder_service):
        with pytest.raises(NotFoundError):
            await reminder_service.update(77, ReminderUpdate(title="Nope"))

    async def test_delete_cancels_timer(self, reminder_service, timers, aps):
        created = await reminder_service.create(new_reminder())
        assert await reminder_service.delete(created["id"]) is True
        assert not timers.is_scheduled(created["id"])
        assert aps.get_job(f"reminder:{created['id']}") is None
        assert await reminder_service.delete(created["id"]) is False

    async def test_delete_cancels_snooze(self, reminder_service, presenter, aps):
        created = await reminder_service.create(new_reminder())
        await presenter.snooze(created["id"])
        await reminder_service.delete(created["id"])
        assert aps.get_job(f"snooze:{created['id']}") is None


class TestTimerCallback:
    """What happens when a reminder timer fires"""

    async def test_fire_presents_reminder(self, reminder_service, presenter, timers):
        created = await reminder_service.create(new_reminder())
        job = timers.job_for(created["id"])
        await job.func(*job.args)
        assert presenter.active["id"] == created["id"]

    async def test_late_fire_after_delete_is_noop(self, reminder_service, presenter, store):
        created = await reminder_service.create(new_reminder())
        await store.delete_reminder(created["id"])
        assert await reminder_service.on_timer(created["id"]) is False
        assert presenter.active is None

    async def test_completed_once_stays_quiet(self, reminder_service, store, presenter):
        created = await reminder_service.create(new_reminder(frequency="once", date="2031-06-03"))
        await store.update_reminder(created["id"], {"is_completed": True})
        assert await reminder_service.on_timer(created["id"]) is False
        assert presenter.active is None

    async def test_completed_daily_reopens_on_next_occurrence(
        self, reminder_service, store, presenter, evaluator, timers, clock
    ):
        """Completion covers one occurrence; poll and timer agree on it"""
        created = await reminder_service.create(new_reminder(time="09:00"))
        await presenter.present(created)
        await presenter.acknowledge(created["id"])

        # acknowledged, so the poll does not surface it again
        assert await evaluator.tick() is None

        clock.advance(days=1)
        assert await evaluator.tick() is None
        job = timers.job_for(created["id"])
        await job.func(*job.args)

        stored = await store.get_reminder(created["id"])
        assert stored["is_completed"] is False
        assert presenter.active["id"] == created["id"]

        presenter.dismiss()
        assert await evaluator.tick() is None
        clock.advance(days=1, seconds=5)
        assert (await evaluator.tick())["id"] == created["id"]
        print("✓ Repeating reminder reopened by its next occurrence")


class TestArmAll:
    """Startup re-arming"""

    async def test_arm_all_skips_inactive_and_finished(self, reminder_service, store, timers):
        active = await store.create_reminder({"title": "Walk", "time": "10:00", "frequency": "daily"})
        inactive = await store.create_reminder({"title": "Nap", "time": "10:00", "frequency": "daily"})
        done = await store.create_reminder({"title": "Call", "time": "12:00", "frequency": "once", "date": "2031-06-03"})
        past = await store.create_reminder({"title": "Tea", "time": "07:00", "frequency": "once", "date": "2031-06-03"})
        await store.update_reminder(inactive["id"], {"is_active": False})
        await store.update_reminder(done["id"], {"is_completed": True})

        assert await reminder_service.arm_all() == 1
        assert timers.scheduled_ids() == [active["id"]]
        assert not timers.is_scheduled(past["id"])

    async def test_shutdown_cancels_everything(self, reminder_service, presenter, timers):
        first = await reminder_service.create(new_reminder())
        await reminder_service.create(new_reminder(title="Water"))
        await presenter.present(first)
        assert reminder_service.shutdown() == 2
        assert timers.scheduled_ids() == []
        assert presenter.active is None

    async def test_list_today(self, reminder_service):
        await reminder_service.create(new_reminder(time="15:00"))
        await reminder_service.create(new_reminder(time="07:00", frequency="once", date="2031-06-04"))
        today = await reminder_service.list_today()
        assert [r["time"] for r in today] == ["15:00"]


class BrokenStore:
    weekly_weekday = 0

    async def get_reminder(self, reminder_id):
        raise StoreError("fetch reminders")


async def test_timer_survives_store_failure(timers, presenter, clock):
    service = ReminderService(BrokenStore(), timers, presenter, clock)
    assert await service.on_timer(1) is False
    assert presenter.active is None


class TestSnoozeScenario:
    """Timer fire, snooze, poll in the same minute, re-surface at T+10"""

    async def test_snooze_holds_for_ten_minutes(
        self, reminder_service, presenter, evaluator, alerts, aps, timers, clock
    ):
        clock.set(DAY_D - timedelta(seconds=10))
        created = await reminder_service.create(new_reminder(time="09:00"))
        assert reminder_service.next_fire_time(created["id"]) == DAY_D

        clock.set(DAY_D)
        job = timers.job_for(created["id"])
        await job.func(*job.args)
        assert presenter.active["id"] == created["id"]

        clock.advance(seconds=20)
        run_at = await presenter.snooze(created["id"])
        assert run_at == DAY_D + timedelta(minutes=10, seconds=20)

        clock.advance(seconds=25)
        assert await evaluator.tick() is None
        assert presenter.active is None

        snooze_job = aps.get_job(f"snooze:{created['id']}")
        assert snooze_job.next_run_time == run_at
        clock.set(run_at)
        assert await snooze_job.func(*snooze_job.args) is True
        assert presenter.active["id"] == created["id"]
        assert alerts.live_alerts()[0]["title"] == "Reminder Snoozed"

        await presenter.acknowledge(created["id"])
        assert await evaluator.tick() is None
        print("✓ Snoozed reminder stays hidden until T+10")

    async def test_poll_skips_timer_shown_reminder_after_snooze(
        self, reminder_service, presenter, evaluator, clock
    ):
        created = await reminder_service.create(new_reminder(time="09:00"))
        assert await reminder_service.on_timer(created["id"]) is True
        clock.advance(seconds=20)
        await presenter.snooze(created["id"])
        clock.advance(seconds=25)
        assert await evaluator.tick() is None

    async def test_poll_skips_timer_shown_reminder_after_dismiss(
        self, reminder_service, presenter, evaluator, clock
    ):
        created = await reminder_service.create(new_reminder(time="09:00"))
        assert await reminder_service.on_timer(created["id"]) is True
        presenter.dismiss()
        clock.advance(seconds=30)
        assert await evaluator.tick() is None

    async def test_snoozed_occurrence_after_earlier_acknowledge(
        self, reminder_service, presenter, store, clock
    ):
        created = await reminder_service.create(new_reminder(time="09:00"))
        await presenter.present(created)
        await presenter.acknowledge(created["id"])

        clock.advance(days=1)
        assert await reminder_service.on_timer(created["id"]) is True
        await presenter.snooze(created["id"])
        clock.advance(minutes=10)

        assert await presenter.resurface(created["id"]) is True
        assert presenter.active["id"] == created["id"]

    async def test_acknowledge_during_snooze_stays_quiet(self, reminder_service, presenter, store, clock):
        created = await reminder_service.create(new_reminder(time="09:00"))
        await reminder_service.on_timer(created["id"])
        await presenter.snooze(created["id"])
        await store.update_reminder(created["id"], {"is_completed": True})
        clock.advance(minutes=10)
        assert await presenter.resurface(created["id"]) is False
        assert presenter.active is None
