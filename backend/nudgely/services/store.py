"""Persistence collaborator for the scheduling engine.

``NudgeStore`` wraps an async session factory. Every method is its own unit
of work and hands back frozen record objects, so callers never hold ORM
instances or sessions across awaits of unrelated work.
"""
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from nudgely.enums import InstanceStatus, NudgeStatus
from nudgely.exceptions import DuplicateInstance
from nudgely.models.instance import NudgeCompletion, NudgeInstance, ReminderEvent
from nudgely.models.nudge import Nudge, Recipient
from nudgely.services.recurrence import Occurrence, RecurrenceRule
from nudgely.timeutils import from_iso, to_iso


@dataclass(frozen=True)
class RecipientRecord:
    id: str
    name: str
    email: str


@dataclass(frozen=True)
class InstanceRecord:
    id: str
    nudge_id: str
    slug: str
    occurrence_date: date
    scheduled_for: datetime
    status: str
    completed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class NudgeRecord:
    id: str
    slug: str
    name: str
    description: str | None
    team_id: str
    status: str
    frequency: str
    interval: int
    time_of_day: str
    timezone: str
    start_date: date
    day_of_week: int | None = None
    monthly_type: str | None = None
    day_of_month: int | None = None
    nth_occurrence: int | None = None
    day_of_week_for_monthly: int | None = None
    end_type: str = "NEVER"
    end_date: date | None = None
    end_after_occurrences: int | None = None
    last_instance_created_at: datetime | None = None
    recipients: tuple[RecipientRecord, ...] = ()
    instance_count: int = 0
    latest_instance: InstanceRecord | None = None

    def to_rule(self) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=self.frequency,
            interval=self.interval,
            time_of_day=self.time_of_day,
            timezone=self.timezone,
            start_date=self.start_date,
            day_of_week=self.day_of_week,
            monthly_type=self.monthly_type,
            day_of_month=self.day_of_month,
            nth_occurrence=self.nth_occurrence,
            day_of_week_for_monthly=self.day_of_week_for_monthly,
            end_type=self.end_type,
            end_date=self.end_date,
            end_after_occurrences=self.end_after_occurrences,
            occurrences_so_far=self.instance_count,
        )


@dataclass(frozen=True)
class ReminderRecord:
    id: str
    instance_id: str
    recipient_email: str
    recipient_name: str
    token: str
    expires_at: datetime
    sent: bool
    attempts: int
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class CompletionRecord:
    id: str
    instance_id: str
    completed_by: str
    completed_by_name: str | None
    completed_at: datetime
    comments: str | None = None


@dataclass(frozen=True)
class PendingReminder:
    """A reminder together with what is needed to render it."""

    reminder: ReminderRecord
    instance: InstanceRecord
    nudge: NudgeRecord


@dataclass(frozen=True)
class TokenLookup:
    reminder: ReminderRecord
    instance: InstanceRecord
    nudge: NudgeRecord
    completion: CompletionRecord | None = None


@dataclass(frozen=True)
class NewReminder:
    recipient_email: str
    recipient_name: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class NudgeCriteria:
    """Filter for nudge lookups; an empty field means "any"."""

    statuses: tuple[str, ...] = ()
    team_id: str | None = None
    slug: str | None = None
    include_recipients: bool = True
    include_latest_instance: bool = True


def active_nudge_criteria(team_id: str | None = None) -> NudgeCriteria:
    """Every ACTIVE nudge, with recipients and latest instance."""
    return NudgeCriteria(statuses=(NudgeStatus.ACTIVE.value,), team_id=team_id)


def nudge_slug_criteria(slug: str) -> NudgeCriteria:
    return NudgeCriteria(slug=slug)


def _optional_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _optional_datetime(value: str | None) -> datetime | None:
    return from_iso(value) if value else None


def _instance_record(instance: NudgeInstance) -> InstanceRecord:
    return InstanceRecord(
        id=instance.id,
        nudge_id=instance.nudge_id,
        slug=instance.slug,
        occurrence_date=date.fromisoformat(instance.occurrence_date),
        scheduled_for=from_iso(instance.scheduled_for),
        status=instance.status,
        completed_at=_optional_datetime(instance.completed_at),
        created_at=_optional_datetime(instance.created_at),
    )


def _reminder_record(event: ReminderEvent) -> ReminderRecord:
    return ReminderRecord(
        id=event.id,
        instance_id=event.nudge_instance_id,
        recipient_email=event.recipient_email,
        recipient_name=event.recipient_name,
        token=event.token,
        expires_at=from_iso(event.expires_at),
        sent=bool(event.sent),
        attempts=event.attempts or 0,
        last_attempt_at=_optional_datetime(event.last_attempt_at),
        completed_at=_optional_datetime(event.completed_at),
    )


def _completion_record(completion: NudgeCompletion) -> CompletionRecord:
    return CompletionRecord(
        id=completion.id,
        instance_id=completion.nudge_instance_id,
        completed_by=completion.completed_by,
        completed_by_name=completion.completed_by_name,
        completed_at=from_iso(completion.created_at),
        comments=completion.comments,
    )


def _nudge_record(
    nudge: Nudge,
    recipients: list[Recipient] | None = None,
    instance_count: int = 0,
    latest_instance: NudgeInstance | None = None,
) -> NudgeRecord:
    return NudgeRecord(
        id=nudge.id,
        slug=nudge.slug,
        name=nudge.name,
        description=nudge.description,
        team_id=nudge.team_id,
        status=nudge.status,
        frequency=nudge.frequency,
        interval=nudge.interval,
        time_of_day=nudge.time_of_day,
        timezone=nudge.timezone,
        start_date=date.fromisoformat(nudge.start_date),
        day_of_week=nudge.day_of_week,
        monthly_type=nudge.monthly_type,
        day_of_month=nudge.day_of_month,
        nth_occurrence=nudge.nth_occurrence,
        day_of_week_for_monthly=nudge.day_of_week_for_monthly,
        end_type=nudge.end_type,
        end_date=_optional_date(nudge.end_date),
        end_after_occurrences=nudge.end_after_occurrences,
        last_instance_created_at=_optional_datetime(nudge.last_instance_created_at),
        recipients=tuple(RecipientRecord(id=r.id, name=r.name, email=r.email) for r in recipients or ()),
        instance_count=instance_count,
        latest_instance=_instance_record(latest_instance) if latest_instance else None,
    )


class NudgeStore:
    """Async persistence for nudges, instances and reminder events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_nudges(self, criteria: NudgeCriteria) -> list[NudgeRecord]:
        """Nudges matching the criteria, with instance counts."""
        query = select(Nudge)
        if criteria.statuses:
            query = query.where(Nudge.status.in_(criteria.statuses))
        if criteria.team_id:
            query = query.where(Nudge.team_id == criteria.team_id)
        if criteria.slug:
            query = query.where(Nudge.slug == criteria.slug)
        if criteria.include_recipients:
            query = query.options(selectinload(Nudge.recipients))

        async with self._session_factory() as db:
            nudges = (await db.execute(query.order_by(Nudge.created_at))).scalars().all()
            if not nudges:
                return []

            nudge_ids = [n.id for n in nudges]
            stats = (
                select(
                    NudgeInstance.nudge_id.label("nudge_id"),
                    func.count(NudgeInstance.id).label("total"),
                    func.max(NudgeInstance.scheduled_for).label("latest"),
                )
                .where(NudgeInstance.nudge_id.in_(nudge_ids))
                .group_by(NudgeInstance.nudge_id)
                .subquery()
            )
            counts = {
                row.nudge_id: row.total
                for row in await db.execute(select(stats.c.nudge_id, stats.c.total))
            }

            latest: dict[str, NudgeInstance] = {}
            if criteria.include_latest_instance:
                latest_query = select(NudgeInstance).join(
                    stats,
                    and_(
                        NudgeInstance.nudge_id == stats.c.nudge_id,
                        NudgeInstance.scheduled_for == stats.c.latest,
                    ),
                )
                for instance in (await db.execute(latest_query)).scalars():
                    latest[instance.nudge_id] = instance

            return [
                _nudge_record(
                    nudge,
                    recipients=list(nudge.recipients) if criteria.include_recipients else None,
                    instance_count=counts.get(nudge.id, 0),
                    latest_instance=latest.get(nudge.id),
                )
                for nudge in nudges
            ]

    async def get_nudge(self, slug: str) -> NudgeRecord | None:
        found = await self.find_nudges(nudge_slug_criteria(slug))
        return found[0] if found else None

    async def create_nudge(self, fields: dict, recipients: list[tuple[str, str]]) -> NudgeRecord:
        """Insert a nudge and its (name, email) recipients."""
        async with self._session_factory() as db:
            nudge = Nudge(**fields)
            nudge.recipients = [Recipient(name=name, email=email) for name, email in recipients]
            db.add(nudge)
            await db.commit()
            return _nudge_record(nudge, recipients=nudge.recipients)

    async def transition_nudge(self, slug: str, from_statuses: tuple[str, ...], to_status: str) -> bool:
        """Move a nudge between lifecycle states; False if it was not in ``from_statuses``."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Nudge)
                .where(Nudge.slug == slug, Nudge.status.in_(from_statuses))
                .values(status=to_status)
            )
            await db.commit()
            return result.rowcount == 1

    async def finish_nudge(self, nudge_id: str) -> bool:
        """Mark an ACTIVE nudge FINISHED."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Nudge)
                .where(Nudge.id == nudge_id, Nudge.status == NudgeStatus.ACTIVE.value)
                .values(status=NudgeStatus.FINISHED.value)
            )
            await db.commit()
            return result.rowcount == 1

    async def create_instance_with_reminders(
        self,
        nudge_id: str,
        slug: str,
        occurrence: Occurrence,
        reminders: list[NewReminder],
        now: datetime,
    ) -> tuple[InstanceRecord, list[ReminderRecord]]:
        """Create an instance, its reminder events and bump the nudge, atomically.

        Raises:
            DuplicateInstance: the slug or (nudge, occurrence date) already exists.
        """
        async with self._session_factory() as db:
            instance = NudgeInstance(
                nudge_id=nudge_id,
                slug=slug,
                occurrence_date=occurrence.local_date.isoformat(),
                scheduled_for=to_iso(occurrence.scheduled_for),
                status=InstanceStatus.PENDING.value,
                created_at=to_iso(now),
            )
            db.add(instance)
            try:
                await db.flush()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateInstance(slug) from exc

            events = [
                ReminderEvent(
                    nudge_instance_id=instance.id,
                    recipient_email=reminder.recipient_email,
                    recipient_name=reminder.recipient_name,
                    token=reminder.token,
                    expires_at=to_iso(reminder.expires_at),
                    sent=0,
                    attempts=0,
                    created_at=to_iso(now),
                )
                for reminder in reminders
            ]
            db.add_all(events)
            await db.execute(
                update(Nudge).where(Nudge.id == nudge_id).values(last_instance_created_at=to_iso(now))
            )
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateInstance(slug) from exc

            return _instance_record(instance), [_reminder_record(event) for event in events]

    async def list_unsent_reminders(
        self,
        max_attempts: int,
        now: datetime,
        instance_id: str | None = None,
        created_before: datetime | None = None,
    ) -> list[PendingReminder]:
        """Unsent, unexpired reminders of open instances still below the attempt ceiling.

        ``created_before`` leaves out reminders that a concurrent pass may
        still be delivering.
        """
        query = (
            select(ReminderEvent, NudgeInstance, Nudge)
            .join(NudgeInstance, ReminderEvent.nudge_instance_id == NudgeInstance.id)
            .join(Nudge, NudgeInstance.nudge_id == Nudge.id)
            .where(
                ReminderEvent.sent == 0,
                ReminderEvent.attempts < max_attempts,
                ReminderEvent.expires_at > to_iso(now),
                NudgeInstance.status.in_((InstanceStatus.PENDING.value, InstanceStatus.SENT.value)),
                Nudge.status != NudgeStatus.DISABLED.value,
            )
            .order_by(NudgeInstance.scheduled_for, ReminderEvent.created_at)
        )
        if instance_id:
            query = query.where(NudgeInstance.id == instance_id)
        if created_before:
            query = query.where(ReminderEvent.created_at <= to_iso(created_before))

        async with self._session_factory() as db:
            rows = (await db.execute(query)).all()
            return [
                PendingReminder(
                    reminder=_reminder_record(event),
                    instance=_instance_record(instance),
                    nudge=_nudge_record(nudge),
                )
                for event, instance, nudge in rows
            ]

    async def list_follow_up_reminders(self, now: datetime, attempted_before: datetime) -> list[PendingReminder]:
        """Delivered, uncompleted, unexpired reminders of open instances of ACTIVE nudges.

        Reminders attempted after ``attempted_before`` are left out.
        """
        query = (
            select(ReminderEvent, NudgeInstance, Nudge)
            .join(NudgeInstance, ReminderEvent.nudge_instance_id == NudgeInstance.id)
            .join(Nudge, NudgeInstance.nudge_id == Nudge.id)
            .where(
                ReminderEvent.sent == 1,
                ReminderEvent.completed_at.is_(None),
                ReminderEvent.expires_at > to_iso(now),
                or_(
                    ReminderEvent.last_attempt_at.is_(None),
                    ReminderEvent.last_attempt_at <= to_iso(attempted_before),
                ),
                NudgeInstance.status.in_((InstanceStatus.PENDING.value, InstanceStatus.SENT.value)),
                Nudge.status == NudgeStatus.ACTIVE.value,
            )
            .order_by(NudgeInstance.scheduled_for, ReminderEvent.recipient_email)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(query)).all()
            return [
                PendingReminder(
                    reminder=_reminder_record(event),
                    instance=_instance_record(instance),
                    nudge=_nudge_record(nudge),
                )
                for event, instance, nudge in rows
            ]

    async def record_dispatch_attempt(
        self,
        reminder_id: str,
        success: bool,
        now: datetime,
        error: str | None = None,
    ) -> ReminderRecord:
        """Count one delivery attempt and its outcome."""
        values = {
            "attempts": ReminderEvent.attempts + 1,
            "last_attempt_at": to_iso(now),
        }
        if success:
            values.update(sent=1, error_message=None)
        else:
            values.update(error_message=error or "Unknown error")

        async with self._session_factory() as db:
            await db.execute(update(ReminderEvent).where(ReminderEvent.id == reminder_id).values(**values))
            await db.commit()
            event = (await db.execute(select(ReminderEvent).where(ReminderEvent.id == reminder_id))).scalar_one()
            return _reminder_record(event)

    async def mark_instance_sent(self, instance_id: str, now: datetime) -> bool:
        """PENDING -> SENT."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(NudgeInstance)
                .where(NudgeInstance.id == instance_id, NudgeInstance.status == InstanceStatus.PENDING.value)
                .values(status=InstanceStatus.SENT.value, sent_at=to_iso(now))
            )
            await db.commit()
            return result.rowcount == 1

    async def expire_stale_instances(self, now: datetime) -> int:
        """Open instances whose every reminder link has expired become EXPIRED."""
        now_iso = to_iso(now)
        stale = (
            select(ReminderEvent.nudge_instance_id)
            .group_by(ReminderEvent.nudge_instance_id)
            .having(func.max(ReminderEvent.expires_at) <= now_iso)
        )
        async with self._session_factory() as db:
            result = await db.execute(
                update(NudgeInstance)
                .where(
                    NudgeInstance.status.in_((InstanceStatus.PENDING.value, InstanceStatus.SENT.value)),
                    NudgeInstance.id.in_(stale),
                )
                .values(status=InstanceStatus.EXPIRED.value, expired_at=now_iso)
            )
            await db.commit()
            return result.rowcount

    async def get_reminder_by_token(self, token: str) -> TokenLookup | None:
        query = (
            select(ReminderEvent)
            .where(ReminderEvent.token == token)
            .options(
                selectinload(ReminderEvent.instance).selectinload(NudgeInstance.nudge).selectinload(Nudge.recipients),
                selectinload(ReminderEvent.instance).selectinload(NudgeInstance.completion),
            )
        )
        async with self._session_factory() as db:
            event = (await db.execute(query)).scalar_one_or_none()
            if event is None:
                return None
            instance = event.instance
            instance_count = (
                await db.execute(select(func.count(NudgeInstance.id)).where(NudgeInstance.nudge_id == instance.nudge_id))
            ).scalar_one()
            return TokenLookup(
                reminder=_reminder_record(event),
                instance=_instance_record(instance),
                nudge=_nudge_record(
                    instance.nudge,
                    recipients=list(instance.nudge.recipients),
                    instance_count=instance_count,
                ),
                completion=_completion_record(instance.completion) if instance.completion else None,
            )

    async def complete_instance(
        self,
        lookup: TokenLookup,
        now: datetime,
        comments: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CompletionRecord | None:
        """Mark the instance behind a reminder COMPLETED.

        Returns None when another request completed it first; the
        conditional update and the unique completion row both guard this.
        """
        now_iso = to_iso(now)
        async with self._session_factory() as db:
            result = await db.execute(
                update(NudgeInstance)
                .where(
                    NudgeInstance.id == lookup.instance.id,
                    NudgeInstance.status.in_((InstanceStatus.PENDING.value, InstanceStatus.SENT.value)),
                )
                .values(status=InstanceStatus.COMPLETED.value, completed_at=now_iso)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None

            completion = NudgeCompletion(
                nudge_id=lookup.nudge.id,
                nudge_instance_id=lookup.instance.id,
                reminder_token=lookup.reminder.token,
                completed_by=lookup.reminder.recipient_email,
                completed_by_name=lookup.reminder.recipient_name,
                comments=comments,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now_iso,
            )
            db.add(completion)
            await db.execute(
                update(ReminderEvent).where(ReminderEvent.id == lookup.reminder.id).values(completed_at=now_iso)
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            return _completion_record(completion)
