"""Scheduler trigger endpoints."""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nudgely.api.deps import get_notifier, get_store, require_cron_secret
from nudgely.config import Settings, get_settings
from nudgely.schemas.cron import PassSummaryResponse
from nudgely.services.notifications import Notifier
from nudgely.services.scheduler import run_nudge_pass
from nudgely.services.store import NudgeStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


async def _trigger_pass(store: NudgeStore, notifier: Notifier, settings: Settings):
    try:
        summary = await run_nudge_pass(store, notifier, settings)
    except Exception:
        logger.exception("Nudge pass failed")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return summary.as_dict()


@router.post("/send-nudges", response_model=PassSummaryResponse)
async def send_nudges(
    store: NudgeStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    """Run one scheduler pass."""
    return await _trigger_pass(store, notifier, settings)


@router.get("/send-nudges", response_model=PassSummaryResponse)
async def send_nudges_get(
    store: NudgeStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    """Same as POST, for schedulers that can only issue GET requests."""
    return await _trigger_pass(store, notifier, settings)
