import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from nudgely.models.instance import NudgeInstance, ReminderEvent
from nudgely.services.completion import complete_reminder
from nudgely.services.dispatch import dispatch_instance
from nudgely.services.materializer import materialize_occurrence
from nudgely.services.scanner import scan_active_nudges
from nudgely.services.scheduler import run_nudge_pass

from conftest import FakeNotifier

# Wednesday 21 Oct 2026, 09:00 in Sydney (AEDT)
WEDNESDAY_9AM = datetime(2026, 10, 20, 22, 0, tzinfo=timezone.utc)


def _reminders(session_factory):
    async def fetch():
        async with session_factory() as db:
            query = select(ReminderEvent).order_by(ReminderEvent.recipient_email)
            return (await db.execute(query)).scalars().all()

    return asyncio.run(fetch())


def _instance_count(session_factory):
    async def fetch():
        async with session_factory() as db:
            return (await db.execute(select(func.count(NudgeInstance.id)))).scalar_one()

    return asyncio.run(fetch())


class SlowNotifier(FakeNotifier):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def send(self, to, subject, html_content):
        await asyncio.sleep(self.delay)
        return await super().send(to, subject, html_content)


def test_due_nudge_materializes_pending_instance_with_unsent_reminders(store, create_nudge, notifier, settings):
    create_nudge()

    async def scenario():
        scan = await scan_active_nudges(store, WEDNESDAY_9AM)
        assert len(scan.due) == 1
        due = scan.due[0]

        instance, reminders = await materialize_occurrence(store, due.nudge, due.occurrence, WEDNESDAY_9AM)
        assert instance.status == "PENDING"
        assert instance.slug == "weekly-sync-2026-10-21"
        assert [r.sent for r in reminders] == [False, False]
        assert len({r.token for r in reminders}) == 2

        result = await dispatch_instance(store, notifier, instance.id, settings, WEDNESDAY_9AM)
        assert result.sent == 2
        return await store.get_nudge("weekly-sync")

    nudge = asyncio.run(scenario())

    assert nudge.latest_instance.status == "SENT"
    assert nudge.last_instance_created_at == WEDNESDAY_9AM


def test_pass_dispatches_reminders_and_marks_instance_sent(store, session_factory, create_nudge, notifier, settings):
    create_nudge()

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    assert summary.as_dict() == {
        "processed": 1,
        "sent": 1,
        "skipped": 0,
        "errors": 0,
        "finished": 0,
        "expired": 0,
        "reminders_sent": 2,
        "retried": 0,
        "exhausted": 0,
    }

    reminders = _reminders(session_factory)
    assert [r.sent for r in reminders] == [1, 1]
    assert [r.attempts for r in reminders] == [1, 1]

    nudge = asyncio.run(store.get_nudge("weekly-sync"))
    assert nudge.latest_instance.status == "SENT"

    assert notifier.subjects_for("ada@example.com") == ["Reminder: Weekly Sync"]
    ada_body = notifier.messages[0][2] if notifier.messages[0][0] == "ada@example.com" else notifier.messages[1][2]
    ada_token = next(r.token for r in reminders if r.recipient_email == "ada@example.com")
    assert f"https://nudgely.test/complete/{ada_token}" in ada_body
    assert "Every week on Wednesday at 9:00 AM" in ada_body


def test_nudge_is_not_due_on_thursday(store, session_factory, create_nudge, notifier, settings):
    create_nudge()

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(days=1)))

    assert summary.processed == 1
    assert summary.sent == 0
    assert summary.skipped == 1
    assert _instance_count(session_factory) == 0
    assert notifier.messages == []


def test_overlapping_passes_create_one_instance(store, session_factory, create_nudge, notifier, settings):
    create_nudge()

    async def overlapping():
        return await asyncio.gather(
            run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM),
            run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM),
        )

    first, second = asyncio.run(overlapping())

    assert first.sent + second.sent == 1
    assert first.skipped + second.skipped == 1
    assert first.errors == second.errors == 0
    assert _instance_count(session_factory) == 1
    assert len(_reminders(session_factory)) == 2


def test_rerun_within_window_is_skipped(store, session_factory, create_nudge, notifier, settings):
    create_nudge()

    asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))
    rerun = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(minutes=5)))

    assert rerun.sent == 0
    assert rerun.skipped == 1
    assert _instance_count(session_factory) == 1
    assert len(notifier.messages) == 2


def test_invalid_time_of_day_is_isolated(store, session_factory, create_nudge, notifier, settings):
    create_nudge(slug="broken", name="Broken", time_of_day="21:00")
    create_nudge()

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    assert summary.processed == 2
    assert summary.errors == 1
    assert summary.sent == 1
    assert asyncio.run(store.get_nudge("broken")).instance_count == 0
    assert asyncio.run(store.get_nudge("weekly-sync")).instance_count == 1


def test_failed_dispatch_is_retried_up_to_the_ceiling(store, session_factory, create_nudge, settings):
    create_nudge()
    notifier = FakeNotifier(failing={"grace@example.com"})

    first = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))
    assert first.reminders_sent == 1
    assert asyncio.run(store.get_nudge("weekly-sync")).latest_instance.status == "SENT"

    second = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(minutes=15)))
    assert second.retried == 1
    assert second.exhausted == 0

    third = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(minutes=30)))
    assert third.retried == 1
    assert third.exhausted == 1

    fourth = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(minutes=45)))
    assert fourth.retried == 0

    grace = next(r for r in _reminders(session_factory) if r.recipient_email == "grace@example.com")
    assert grace.sent == 0
    assert grace.attempts == settings.max_dispatch_attempts
    assert grace.error_message == "notifier did not accept the message"
    assert len(notifier.rejected) == settings.max_dispatch_attempts


def test_timed_out_nudge_is_reported_and_picked_up_next_pass(store, session_factory, create_nudge, settings):
    create_nudge()
    hasty = settings.model_copy(update={"per_nudge_timeout_seconds": 0.5})

    first = asyncio.run(run_nudge_pass(store, SlowNotifier(delay=3), hasty, now=WEDNESDAY_9AM))
    assert first.errors == 1
    assert first.sent == 0
    assert _instance_count(session_factory) == 1

    notifier = FakeNotifier()
    second = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(minutes=15)))
    assert second.retried == 2
    assert second.reminders_sent == 2
    assert asyncio.run(store.get_nudge("weekly-sync")).latest_instance.status == "SENT"


def test_nudge_finishes_after_its_last_occurrence(store, create_nudge, notifier, settings):
    create_nudge(end_type="AFTER_OCCURRENCES", end_after_occurrences=1)

    first = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))
    assert first.sent == 1

    second = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(days=7)))
    assert second.sent == 0
    assert second.finished == 1
    assert asyncio.run(store.get_nudge("weekly-sync")).status == "FINISHED"


def test_nudge_past_end_date_finishes(store, create_nudge, notifier, settings):
    create_nudge(end_type="ON_DATE", end_date="2026-10-14")

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    assert summary.finished == 1
    assert summary.sent == 0
    assert asyncio.run(store.get_nudge("weekly-sync")).status == "FINISHED"


def test_paused_nudge_is_not_scanned(store, create_nudge, notifier, settings):
    create_nudge(status="PAUSED")

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    assert summary.processed == 0
    assert notifier.messages == []


def test_stale_instances_expire(store, create_nudge, notifier, settings):
    create_nudge()
    asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    later = WEDNESDAY_9AM + timedelta(days=7, hours=1)
    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=later))

    assert summary.expired == 1
    assert asyncio.run(store.get_nudge("weekly-sync")).latest_instance.status == "EXPIRED"


def test_open_instance_is_followed_up_on_later_days(store, session_factory, create_nudge, settings):
    create_nudge()
    notifier = FakeNotifier()
    asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))

    later_same_day = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(hours=2)))
    assert later_same_day.reminders_sent == 0

    thursday = WEDNESDAY_9AM + timedelta(days=1)
    follow_up = asyncio.run(run_nudge_pass(store, notifier, settings, now=thursday))
    assert follow_up.sent == 0
    assert follow_up.reminders_sent == 2
    assert notifier.subjects_for("ada@example.com") == ["Reminder: Weekly Sync", "Still open: Weekly Sync"]
    assert "hasn't been completed yet" in notifier.messages[-1][2]

    rerun = asyncio.run(run_nudge_pass(store, notifier, settings, now=thursday + timedelta(minutes=5)))
    assert rerun.reminders_sent == 0

    afternoon = asyncio.run(run_nudge_pass(store, notifier, settings, now=thursday + timedelta(hours=5)))
    assert afternoon.reminders_sent == 0

    reminders = _reminders(session_factory)
    assert [r.attempts for r in reminders] == [2, 2]
    assert len(notifier.messages) == 4


def test_completed_instance_is_not_followed_up(store, session_factory, create_nudge, notifier, settings):
    create_nudge()
    asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM))
    ada_token = next(r.token for r in _reminders(session_factory) if r.recipient_email == "ada@example.com")
    asyncio.run(complete_reminder(store, ada_token, now=WEDNESDAY_9AM + timedelta(hours=1)))

    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=WEDNESDAY_9AM + timedelta(days=1)))

    assert summary.reminders_sent == 0
    assert len(notifier.messages) == 2


def test_failed_follow_up_is_recorded_and_not_repeated_within_the_interval(
    store, session_factory, create_nudge, settings
):
    create_nudge()
    asyncio.run(run_nudge_pass(store, FakeNotifier(), settings, now=WEDNESDAY_9AM))

    notifier = FakeNotifier(failing={"grace@example.com"})
    thursday = WEDNESDAY_9AM + timedelta(days=1)
    summary = asyncio.run(run_nudge_pass(store, notifier, settings, now=thursday))
    assert summary.reminders_sent == 1
    assert summary.errors == 0

    grace = next(r for r in _reminders(session_factory) if r.recipient_email == "grace@example.com")
    assert grace.sent == 1
    assert grace.attempts == 2
    assert grace.error_message == "notifier did not accept the message"

    rerun = asyncio.run(run_nudge_pass(store, notifier, settings, now=thursday + timedelta(minutes=10)))
    assert rerun.reminders_sent == 0
    assert len(notifier.rejected) == 1
