"""Completion handler for recipient acknowledgements."""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from nudgely.enums import InstanceStatus
from nudgely.services.notifications import Notifier, generate_completion_html
from nudgely.services.recurrence import next_occurrence
from nudgely.services.store import CompletionRecord, NudgeStore, TokenLookup
from nudgely.timeutils import ensure_utc, from_utc, utcnow

logger = logging.getLogger(__name__)


class CompletionError(str, enum.Enum):
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"


MESSAGES = {
    None: "Reminder completed successfully!",
    CompletionError.TOKEN_NOT_FOUND: "This reminder link is not valid.",
    CompletionError.TOKEN_EXPIRED: "This reminder link has expired.",
    CompletionError.ALREADY_COMPLETED: "This reminder has already been completed.",
}


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    message: str
    error: CompletionError | None = None
    nudge_name: str | None = None
    nudge_description: str | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    next_scheduled: datetime | None = None


def _rejected(error: CompletionError, lookup: TokenLookup | None = None) -> CompletionResult:
    logger.info(f"Completion rejected: {error.value}")
    if lookup is None:
        return CompletionResult(success=False, message=MESSAGES[error], error=error)

    completion = lookup.completion
    return CompletionResult(
        success=False,
        message=MESSAGES[error],
        error=error,
        nudge_name=lookup.nudge.name,
        nudge_description=lookup.nudge.description,
        completed_at=completion.completed_at if completion else None,
        completed_by=(completion.completed_by_name or completion.completed_by) if completion else None,
    )


def _next_scheduled(lookup: TokenLookup, now: datetime) -> datetime | None:
    try:
        return next_occurrence(lookup.nudge.to_rule(), now)
    except ValueError as e:
        logger.warning(f"Cannot compute next occurrence for nudge {lookup.nudge.id}: {e}")
        return None


def reminder_state(lookup: TokenLookup, now: datetime) -> str:
    """State of a reminder as seen by its recipient."""
    if lookup.completion is not None or lookup.instance.status == InstanceStatus.COMPLETED:
        return InstanceStatus.COMPLETED.value
    if ensure_utc(now) >= lookup.reminder.expires_at:
        return InstanceStatus.EXPIRED.value
    return lookup.instance.status


async def notify_completion(
    notifier: Notifier,
    lookup: TokenLookup,
    completion: CompletionRecord,
) -> int:
    """Tell every recipient of the nudge that it was completed. Returns how many were delivered."""
    completed_at = from_utc(completion.completed_at, lookup.nudge.timezone).strftime("%b %d, %Y %I:%M %p")
    completed_by = completion.completed_by_name or completion.completed_by
    subject = f"Completed: {lookup.nudge.name}"

    sends = [
        notifier.send(
            recipient.email,
            subject,
            generate_completion_html(
                recipient_name=recipient.name,
                nudge_name=lookup.nudge.name,
                completed_by=completed_by,
                completed_at=completed_at,
                comments=completion.comments,
            ),
        )
        for recipient in lookup.nudge.recipients
    ]
    results = await asyncio.gather(*sends, return_exceptions=True)

    delivered = 0
    for recipient, outcome in zip(lookup.nudge.recipients, results):
        if isinstance(outcome, Exception):
            logger.error(f"Completion notification to {recipient.email} failed: {outcome}")
        elif outcome:
            delivered += 1
    return delivered


async def complete_reminder(
    store: NudgeStore,
    token: str,
    now: datetime | None = None,
    comments: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    notifier: Notifier | None = None,
) -> CompletionResult:
    """Mark the instance behind ``token`` as completed.

    Rejections come back as a result with ``error`` set rather than raising.
    A second submission of the same token, even a concurrent one, sees
    ALREADY_COMPLETED and leaves the first completion untouched.
    """
    now = ensure_utc(now or utcnow())

    lookup = await store.get_reminder_by_token(token)
    if lookup is None:
        return _rejected(CompletionError.TOKEN_NOT_FOUND)

    if now >= lookup.reminder.expires_at:
        return _rejected(CompletionError.TOKEN_EXPIRED, lookup)

    if lookup.completion is not None or lookup.instance.status == InstanceStatus.COMPLETED:
        return _rejected(CompletionError.ALREADY_COMPLETED, lookup)

    completion = await store.complete_instance(
        lookup,
        now,
        comments=comments,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    if completion is None:
        # Lost the race to another submission
        return _rejected(CompletionError.ALREADY_COMPLETED, await store.get_reminder_by_token(token))

    logger.info(f"Instance {lookup.instance.slug} completed by {completion.completed_by}")

    if notifier is not None:
        try:
            await notify_completion(notifier, lookup, completion)
        except Exception:
            logger.exception(f"Error sending completion notifications for {lookup.instance.slug}")

    return CompletionResult(
        success=True,
        message=MESSAGES[None],
        nudge_name=lookup.nudge.name,
        nudge_description=lookup.nudge.description,
        completed_at=completion.completed_at,
        completed_by=completion.completed_by_name or completion.completed_by,
        next_scheduled=_next_scheduled(lookup, now),
    )
