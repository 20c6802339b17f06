"""Instance materializer: turns a due occurrence into durable records."""
import logging
import secrets
from datetime import datetime

from nudgely.exceptions import DuplicateInstance
from nudgely.services.recurrence import Occurrence, reminder_ttl
from nudgely.services.store import InstanceRecord, NewReminder, NudgeRecord, NudgeStore, ReminderRecord

logger = logging.getLogger(__name__)


def occurrence_slug(nudge_slug: str, occurrence: Occurrence) -> str:
    """Idempotency key: one instance per nudge per logical occurrence date."""
    return f"{nudge_slug}-{occurrence.local_date.isoformat()}"


def generate_reminder_token() -> str:
    return secrets.token_urlsafe(32)


async def materialize_occurrence(
    store: NudgeStore,
    nudge: NudgeRecord,
    occurrence: Occurrence,
    now: datetime,
) -> tuple[InstanceRecord, list[ReminderRecord]] | None:
    """Create the instance and one reminder per recipient.

    Returns None if this occurrence was already materialized, by an earlier
    pass or a concurrent one.
    """
    expires_at = now + reminder_ttl(nudge.frequency)
    reminders = [
        NewReminder(
            recipient_email=recipient.email,
            recipient_name=recipient.name,
            token=generate_reminder_token(),
            expires_at=expires_at,
        )
        for recipient in nudge.recipients
    ]
    slug = occurrence_slug(nudge.slug, occurrence)

    try:
        instance, created = await store.create_instance_with_reminders(
            nudge_id=nudge.id,
            slug=slug,
            occurrence=occurrence,
            reminders=reminders,
            now=now,
        )
    except DuplicateInstance:
        logger.info(f"Instance {slug} already exists, skipping")
        return None

    logger.info(f"Created instance {slug} with {len(created)} reminders")
    return instance, created
