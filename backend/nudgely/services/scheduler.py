"""Scheduler pass: scan, materialize and dispatch in one bounded run.

One pass is triggered externally (see ``api/cron.py``). Due nudges are
independent units of work processed on a bounded pool; each unit is capped
by a per-item timeout and the batch by an overall deadline. Anything that
does not finish is reported as an error and picked up by a later pass, the
instance row being the only commit point that matters.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from nudgely.config import Settings
from nudgely.services.dispatch import DispatchResult, dispatch_instance, retry_unsent_reminders, send_follow_ups
from nudgely.services.materializer import materialize_occurrence
from nudgely.services.notifications import Notifier
from nudgely.services.scanner import DueNudge, scan_active_nudges
from nudgely.services.store import NudgeStore
from nudgely.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    finished: int = 0
    expired: int = 0
    reminders_sent: int = 0
    retried: int = 0
    exhausted: int = 0

    def as_dict(self) -> dict:
        return asdict(self)

    def add_dispatch(self, result: DispatchResult) -> None:
        self.reminders_sent += result.sent
        self.exhausted += result.exhausted
        self.errors += result.errors


async def process_due_nudge(
    store: NudgeStore,
    notifier: Notifier,
    due: DueNudge,
    settings: Settings,
    now: datetime,
) -> tuple[str, DispatchResult] | None:
    """Materialize one due occurrence and dispatch its reminders.

    Returns None when the occurrence was already materialized.
    """
    materialized = await materialize_occurrence(store, due.nudge, due.occurrence, now)
    if materialized is None:
        return None

    instance, _ = materialized
    return instance.id, await dispatch_instance(store, notifier, instance.id, settings, now)


async def _finish_ended(store: NudgeStore, ended, summary: PassSummary) -> None:
    for nudge in ended:
        try:
            if await store.finish_nudge(nudge.id):
                logger.info(f"Nudge {nudge.name} ({nudge.id}) reached its end condition")
                summary.finished += 1
        except Exception:
            logger.exception(f"Failed to finish nudge {nudge.id}")
            summary.errors += 1


async def run_nudge_pass(
    store: NudgeStore,
    notifier: Notifier,
    settings: Settings,
    now: datetime | None = None,
) -> PassSummary:
    """Run one scheduler pass and return its counters.

    Store errors before or during the scan propagate; per-nudge errors are
    counted and never abort the pass.
    """
    now = ensure_utc(now or utcnow())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.pass_deadline_seconds
    tolerance = timedelta(minutes=settings.tick_tolerance_minutes)
    summary = PassSummary()

    logger.info(f"Starting nudge pass at {now.isoformat()}")

    summary.expired = await store.expire_stale_instances(now)
    scan = await scan_active_nudges(store, now, tolerance)
    summary.processed = scan.scanned
    summary.skipped = len(scan.not_due)
    summary.errors = len(scan.errors)

    await _finish_ended(store, scan.ended, summary)

    semaphore = asyncio.Semaphore(settings.scan_concurrency)

    async def run_unit(due: DueNudge):
        async with semaphore:
            return await asyncio.wait_for(
                process_due_nudge(store, notifier, due, settings, now),
                timeout=settings.per_nudge_timeout_seconds,
            )

    fired_instances: set[str] = set()
    tasks = {asyncio.create_task(run_unit(due)): due for due in scan.due}
    if tasks:
        done, pending = await asyncio.wait(tasks, timeout=max(deadline - loop.time(), 0))

        for task in pending:
            task.cancel()
            logger.error(f"Nudge {tasks[task].nudge.id} did not finish before the pass deadline")
            summary.errors += 1
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            due = tasks[task]
            error = task.exception()
            if isinstance(error, asyncio.TimeoutError):
                logger.error(f"Nudge {due.nudge.id} timed out after {settings.per_nudge_timeout_seconds}s")
                summary.errors += 1
                continue
            if error is not None:
                logger.error(f"Error processing nudge {due.nudge.id}", exc_info=error)
                summary.errors += 1
                continue

            outcome = task.result()
            if outcome is None:
                summary.skipped += 1
                continue
            instance_id, dispatched = outcome
            fired_instances.add(instance_id)
            summary.sent += 1
            summary.add_dispatch(dispatched)

    retry = await _run_phase(
        "reminder retries",
        lambda: retry_unsent_reminders(store, notifier, settings, now, exclude_instance_ids=fired_instances),
        deadline,
        summary,
    )
    if retry is not None:
        summary.retried = retry.sent + retry.failed + retry.exhausted
        summary.add_dispatch(retry)

    follow_ups = await _run_phase(
        "follow-ups",
        lambda: send_follow_ups(store, notifier, settings, now, exclude_instance_ids=fired_instances),
        deadline,
        summary,
    )
    if follow_ups is not None:
        summary.add_dispatch(follow_ups)

    logger.info(f"Nudge pass completed: {summary.as_dict()}")
    return summary


async def _run_phase(name: str, start, deadline: float, summary: PassSummary) -> DispatchResult | None:
    """Run a dispatch phase within what is left of the pass deadline."""
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        logger.warning(f"Pass deadline reached, skipping {name}")
        return None

    try:
        return await asyncio.wait_for(start(), timeout=remaining)
    except asyncio.TimeoutError:
        logger.error(f"{name.capitalize()} did not finish before the pass deadline")
    except Exception:
        logger.exception(f"{name.capitalize()} failed")
    summary.errors += 1
    return None
