"""Reminder completion endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from nudgely.api.deps import get_notifier, get_request_ip, get_store
from nudgely.schemas.complete import CompletionRequest, CompletionResponse, ReminderPreviewResponse
from nudgely.services.completion import CompletionError, complete_reminder, reminder_state
from nudgely.services.notifications import Notifier
from nudgely.services.store import NudgeStore
from nudgely.timeutils import utcnow

router = APIRouter(prefix="/complete", tags=["complete"])

ERROR_STATUS = {
    CompletionError.TOKEN_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CompletionError.TOKEN_EXPIRED: status.HTTP_410_GONE,
    CompletionError.ALREADY_COMPLETED: status.HTTP_409_CONFLICT,
}


@router.get("/{token}", response_model=ReminderPreviewResponse)
async def preview_reminder(token: str, store: NudgeStore = Depends(get_store)):
    """Show the reminder behind a completion link without changing anything."""
    lookup = await store.get_reminder_by_token(token)
    if lookup is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This reminder link is not valid.",
        )

    completion = lookup.completion
    return ReminderPreviewResponse(
        nudge_name=lookup.nudge.name,
        nudge_description=lookup.nudge.description,
        recipient_name=lookup.reminder.recipient_name,
        recipient_email=lookup.reminder.recipient_email,
        scheduled_for=lookup.instance.scheduled_for,
        expires_at=lookup.reminder.expires_at,
        state=reminder_state(lookup, utcnow()),
        completed_at=completion.completed_at if completion else None,
        completed_by=(completion.completed_by_name or completion.completed_by) if completion else None,
    )


@router.post("/{token}", response_model=CompletionResponse)
async def complete(
    token: str,
    request: Request,
    payload: CompletionRequest | None = None,
    store: NudgeStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
):
    """Mark the nudge instance behind a completion link as done."""
    result = await complete_reminder(
        store,
        token,
        comments=payload.comments if payload else None,
        ip_address=get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
        notifier=notifier,
    )

    body = CompletionResponse(
        success=result.success,
        message=result.message,
        error=result.error.value if result.error else None,
        nudge_name=result.nudge_name,
        nudge_description=result.nudge_description,
        completed_at=result.completed_at,
        completed_by=result.completed_by,
        next_scheduled=result.next_scheduled,
    )
    if result.error is not None:
        return JSONResponse(status_code=ERROR_STATUS[result.error], content=body.model_dump(mode="json"))
    return body
