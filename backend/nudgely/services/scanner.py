"""Occurrence scanner: which active nudges are due at this tick."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from nudgely.exceptions import InvalidTimeFormat, RuleEvaluationError
from nudgely.services.recurrence import DEFAULT_TOLERANCE, Occurrence, due_occurrence, has_ended, next_occurrence
from nudgely.services.store import NudgeRecord, NudgeStore, active_nudge_criteria

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueNudge:
    nudge: NudgeRecord
    occurrence: Occurrence


@dataclass
class ScanResult:
    """Outcome of evaluating every active nudge once."""

    scanned: int = 0
    due: list[DueNudge] = field(default_factory=list)
    ended: list[NudgeRecord] = field(default_factory=list)
    not_due: list[NudgeRecord] = field(default_factory=list)
    errors: dict[str, Exception] = field(default_factory=dict)


def evaluate_nudge(nudge: NudgeRecord, now: datetime, tolerance: timedelta = DEFAULT_TOLERANCE) -> Occurrence | None:
    """Due occurrence for one nudge.

    Raises:
        InvalidTimeFormat: the stored time of day is malformed.
        RuleEvaluationError: anything else went wrong inside the rule.
    """
    try:
        return due_occurrence(nudge.to_rule(), now, tolerance)
    except InvalidTimeFormat:
        raise
    except Exception as e:
        raise RuleEvaluationError(nudge.id, e) from e


def is_exhausted(nudge: NudgeRecord, now: datetime) -> bool:
    """End condition met, or no occurrence left before it."""
    rule = nudge.to_rule()
    return has_ended(rule, now) or next_occurrence(rule, now) is None


async def scan_active_nudges(
    store: NudgeStore,
    now: datetime,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> ScanResult:
    """Evaluate every ACTIVE nudge against ``now``.

    Store failures propagate. Rule failures are recorded per nudge and the
    scan carries on.
    """
    nudges = await store.find_nudges(active_nudge_criteria())
    result = ScanResult(scanned=len(nudges))

    for nudge in nudges:
        try:
            occurrence = evaluate_nudge(nudge, now, tolerance)
            if occurrence is not None:
                result.due.append(DueNudge(nudge=nudge, occurrence=occurrence))
            elif is_exhausted(nudge, now):
                result.ended.append(nudge)
            else:
                result.not_due.append(nudge)
        except InvalidTimeFormat as e:
            logger.error(f"Nudge {nudge.id} has an invalid time of day: {e}")
            result.errors[nudge.id] = e
        except RuleEvaluationError as e:
            logger.exception(f"Failed to evaluate nudge {nudge.id}")
            result.errors[nudge.id] = e
        except Exception as e:
            logger.exception(f"Failed to check end condition of nudge {nudge.id}")
            result.errors[nudge.id] = RuleEvaluationError(nudge.id, e)

    logger.info(
        f"Scanned {result.scanned} active nudges: {len(result.due)} due, "
        f"{len(result.ended)} ended, {len(result.errors)} errors"
    )
    return result
