"""Nudge management endpoints."""
import logging
import re
import secrets
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from nudgely.api.deps import get_store
from nudgely.enums import NudgeStatus
from nudgely.schemas.nudge import NudgeCreate, NudgeResponse, OccurrenceResponse, ScheduleResponse
from nudgely.services.recurrence import format_schedule_info, next_occurrence, upcoming_occurrences
from nudgely.services.store import NudgeRecord, NudgeStore
from nudgely.timeutils import from_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/nudges", tags=["nudges"])


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:80] or "nudge"


def build_nudge_slug(name: str) -> str:
    """URL slug for a nudge; the random suffix keeps same-named nudges apart."""
    return f"{slugify(name)}-{secrets.token_hex(3)}"


def to_response(nudge: NudgeRecord) -> NudgeResponse:
    rule = nudge.to_rule()
    try:
        upcoming = next_occurrence(rule, utcnow())
    except ValueError as e:
        logger.warning(f"Cannot compute next occurrence for nudge {nudge.id}: {e}")
        upcoming = None
    return NudgeResponse(
        **asdict(nudge),
        schedule_info=format_schedule_info(rule),
        next_scheduled=upcoming,
    )


async def _get_nudge_or_404(store: NudgeStore, slug: str) -> NudgeRecord:
    nudge = await store.get_nudge(slug)
    if not nudge:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Nudge not found",
        )
    return nudge


@router.post("", response_model=NudgeResponse, status_code=status.HTTP_201_CREATED)
async def create_nudge(nudge_data: NudgeCreate, store: NudgeStore = Depends(get_store)):
    """Create a recurring nudge."""
    start_date = nudge_data.start_date or from_utc(utcnow(), nudge_data.timezone).date()

    fields = nudge_data.model_dump(exclude={"recipients", "start_date", "end_date"}, mode="json")
    fields.update(
        slug=build_nudge_slug(nudge_data.name),
        status=NudgeStatus.ACTIVE.value,
        start_date=start_date.isoformat(),
        end_date=nudge_data.end_date.isoformat() if nudge_data.end_date else None,
    )
    recipients = [(r.name, r.email) for r in nudge_data.recipients]

    nudge = await store.create_nudge(fields, recipients)
    logger.info(f"Created nudge {nudge.slug} with {len(recipients)} recipients")
    return to_response(nudge)


@router.get("/{slug}", response_model=NudgeResponse)
async def get_nudge(slug: str, store: NudgeStore = Depends(get_store)):
    """Get a nudge with its recipients and latest instance."""
    return to_response(await _get_nudge_or_404(store, slug))


async def _transition(
    store: NudgeStore,
    slug: str,
    from_statuses: tuple[NudgeStatus, ...],
    to_status: NudgeStatus,
) -> NudgeResponse:
    expected = tuple(s.value for s in from_statuses)
    if not await store.transition_nudge(slug, expected, to_status.value):
        nudge = await _get_nudge_or_404(store, slug)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Nudge is {nudge.status}, expected {' or '.join(expected)}",
        )
    logger.info(f"Nudge {slug} moved to {to_status.value}")
    return to_response(await _get_nudge_or_404(store, slug))


@router.post("/{slug}/pause", response_model=NudgeResponse)
async def pause_nudge(slug: str, store: NudgeStore = Depends(get_store)):
    """Stop an active nudge from firing until it is resumed."""
    return await _transition(store, slug, (NudgeStatus.ACTIVE,), NudgeStatus.PAUSED)


@router.post("/{slug}/resume", response_model=NudgeResponse)
async def resume_nudge(slug: str, store: NudgeStore = Depends(get_store)):
    """Resume a paused nudge."""
    return await _transition(store, slug, (NudgeStatus.PAUSED,), NudgeStatus.ACTIVE)


@router.post("/{slug}/disable", response_model=NudgeResponse)
async def disable_nudge(slug: str, store: NudgeStore = Depends(get_store)):
    """Switch a nudge off for good; its history is kept."""
    return await _transition(store, slug, (NudgeStatus.ACTIVE, NudgeStatus.PAUSED), NudgeStatus.DISABLED)


@router.get("/{slug}/schedule", response_model=ScheduleResponse)
async def get_schedule(
    slug: str,
    count: int = Query(5, ge=1, le=50),
    store: NudgeStore = Depends(get_store),
):
    """Preview the next occurrences of a nudge."""
    nudge = await _get_nudge_or_404(store, slug)
    rule = nudge.to_rule()
    try:
        occurrences = upcoming_occurrences(rule, utcnow(), count)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    return ScheduleResponse(
        slug=nudge.slug,
        timezone=nudge.timezone,
        schedule_info=format_schedule_info(rule),
        occurrences=[OccurrenceResponse(**asdict(o)) for o in occurrences],
    )
