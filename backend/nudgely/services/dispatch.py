"""Dispatch coordinator: delivers reminders, follow-ups and tracks every attempt."""
import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from nudgely.config import Settings
from nudgely.exceptions import DispatchFailure
from nudgely.services.notifications import Notifier, completion_url, generate_reminder_html
from nudgely.services.recurrence import follow_up_day, format_schedule_info
from nudgely.services.store import NudgeStore, PendingReminder

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"  # will be retried on a later pass
    EXHAUSTED = "exhausted"  # attempt ceiling reached, no more retries


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    exhausted: int = 0
    errors: int = 0

    def add(self, outcome: DeliveryOutcome) -> None:
        if outcome == DeliveryOutcome.SENT:
            self.sent += 1
        elif outcome == DeliveryOutcome.EXHAUSTED:
            self.exhausted += 1
        else:
            self.failed += 1

    def merge(self, other: "DispatchResult") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.exhausted += other.exhausted
        self.errors += other.errors


async def _deliver(notifier: Notifier, pending: PendingReminder, app_url: str, follow_up: bool = False) -> None:
    nudge = pending.nudge
    body = generate_reminder_html(
        recipient_name=pending.reminder.recipient_name,
        nudge_name=nudge.name,
        nudge_description=nudge.description,
        schedule_info=format_schedule_info(nudge.to_rule()),
        link=completion_url(app_url, pending.reminder.token),
        follow_up=follow_up,
    )
    subject = f"Still open: {nudge.name}" if follow_up else f"Reminder: {nudge.name}"
    try:
        delivered = await notifier.send(pending.reminder.recipient_email, subject, body)
    except Exception as e:
        raise DispatchFailure(pending.reminder.id, str(e)) from e
    if not delivered:
        raise DispatchFailure(pending.reminder.id, "notifier did not accept the message")


async def dispatch_reminder(
    store: NudgeStore,
    notifier: Notifier,
    pending: PendingReminder,
    settings: Settings,
    now: datetime,
) -> DeliveryOutcome:
    """Send one reminder and record the attempt."""
    try:
        await _deliver(notifier, pending, settings.app_url)
    except DispatchFailure as e:
        record = await store.record_dispatch_attempt(pending.reminder.id, False, now, error=e.reason)
        if record.attempts >= settings.max_dispatch_attempts:
            logger.error(
                f"Giving up on reminder {record.id} to {record.recipient_email} "
                f"after {record.attempts} attempts: {e.reason}"
            )
            return DeliveryOutcome.EXHAUSTED
        logger.warning(f"Reminder {record.id} attempt {record.attempts} failed: {e.reason}")
        return DeliveryOutcome.FAILED

    await store.record_dispatch_attempt(pending.reminder.id, True, now)
    logger.info(f"Reminder sent to {pending.reminder.recipient_email} for {pending.nudge.name}")
    return DeliveryOutcome.SENT


async def _dispatch_group(
    store: NudgeStore,
    notifier: Notifier,
    instance_id: str,
    reminders: list[PendingReminder],
    settings: Settings,
    now: datetime,
) -> DispatchResult:
    result = DispatchResult()
    for pending in reminders:
        result.add(await dispatch_reminder(store, notifier, pending, settings, now))
    if result.sent:
        await store.mark_instance_sent(instance_id, now)
    return result


async def dispatch_instance(
    store: NudgeStore,
    notifier: Notifier,
    instance_id: str,
    settings: Settings,
    now: datetime,
) -> DispatchResult:
    """Deliver every unsent reminder of one instance."""
    reminders = await store.list_unsent_reminders(settings.max_dispatch_attempts, now, instance_id=instance_id)
    return await _dispatch_group(store, notifier, instance_id, reminders, settings, now)


async def retry_unsent_reminders(
    store: NudgeStore,
    notifier: Notifier,
    settings: Settings,
    now: datetime,
    exclude_instance_ids: set[str] | frozenset[str] = frozenset(),
) -> DispatchResult:
    """Retry reminders from earlier passes that are still below the attempt ceiling.

    Reminders younger than one per-nudge timeout may still be in flight in
    another pass and are left alone. A failure on one instance does not stop
    the others.
    """
    in_flight_cutoff = now - timedelta(seconds=settings.per_nudge_timeout_seconds)
    by_instance: dict[str, list[PendingReminder]] = defaultdict(list)
    for pending in await store.list_unsent_reminders(
        settings.max_dispatch_attempts, now, created_before=in_flight_cutoff
    ):
        if pending.instance.id not in exclude_instance_ids:
            by_instance[pending.instance.id].append(pending)

    result = DispatchResult()
    for instance_id, reminders in by_instance.items():
        try:
            result.merge(await _dispatch_group(store, notifier, instance_id, reminders, settings, now))
        except Exception:
            logger.exception(f"Failed to retry reminders for instance {instance_id}")
            result.errors += 1
    return result


async def send_follow_ups(
    store: NudgeStore,
    notifier: Notifier,
    settings: Settings,
    now: datetime,
    exclude_instance_ids: set[str] | frozenset[str] = frozenset(),
) -> DispatchResult:
    """Remind recipients of instances that are still open on a later day.

    A recipient is reminded at most once per ``follow_up_interval_hours``,
    at the nudge's time of day and never on the day the instance was created.
    """
    tolerance = timedelta(minutes=settings.tick_tolerance_minutes)
    attempted_before = now - timedelta(hours=settings.follow_up_interval_hours)

    result = DispatchResult()
    for pending in await store.list_follow_up_reminders(now, attempted_before):
        if pending.instance.id in exclude_instance_ids:
            continue
        try:
            created_at = pending.instance.created_at or pending.instance.scheduled_for
            if follow_up_day(pending.nudge.to_rule(), created_at, now, tolerance) is None:
                continue
            await _deliver(notifier, pending, settings.app_url, follow_up=True)
        except DispatchFailure as e:
            await store.record_dispatch_attempt(pending.reminder.id, False, now, error=e.reason)
            logger.warning(f"Follow-up to {pending.reminder.recipient_email} for {pending.nudge.name} failed: {e.reason}")
            result.failed += 1
            continue
        except Exception:
            logger.exception(f"Failed to follow up on instance {pending.instance.id}")
            result.errors += 1
            continue

        await store.record_dispatch_attempt(pending.reminder.id, True, now)
        logger.info(f"Follow-up sent to {pending.reminder.recipient_email} for {pending.nudge.name}")
        result.sent += 1
    return result
