"""Completion schemas."""
from datetime import datetime

from pydantic import BaseModel, Field


class CompletionRequest(BaseModel):
    """Request to complete a reminder."""

    comments: str | None = Field(None, max_length=2000)


class CompletionResponse(BaseModel):
    """Outcome of a completion attempt."""

    success: bool
    message: str
    error: str | None = None
    nudge_name: str | None = None
    nudge_description: str | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    next_scheduled: datetime | None = None

    class Config:
        from_attributes = True


class ReminderPreviewResponse(BaseModel):
    """What a recipient sees before completing a reminder."""

    nudge_name: str
    nudge_description: str | None = None
    recipient_name: str
    recipient_email: str
    scheduled_for: datetime
    expires_at: datetime
    state: str
    completed_at: datetime | None = None
    completed_by: str | None = None
