"""Nudge template schemas."""
from pydantic import BaseModel


class NudgeTemplateResponse(BaseModel):
    """Ready-made nudge definition."""

    id: str
    slug: str
    name: str
    description: str
    category: str
    tier: str
    frequency: str
    interval: int
    time_of_day: str
    day_of_week: int | None = None
    monthly_type: str | None = None
    day_of_month: int | None = None
    nth_occurrence: int | None = None
    day_of_week_for_monthly: int | None = None

    class Config:
        from_attributes = True
