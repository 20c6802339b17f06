"""Scheduler trigger schemas."""
from pydantic import BaseModel


class PassSummaryResponse(BaseModel):
    """Counters of one scheduler pass."""

    processed: int
    sent: int
    skipped: int
    errors: int
    finished: int = 0
    expired: int = 0
    reminders_sent: int = 0
    retried: int = 0
    exhausted: int = 0
