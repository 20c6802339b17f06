"""Nudge schemas."""
from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from nudgely.enums import EndType, Frequency, MonthlyType
from nudgely.services.recurrence import (
    ORDINALS,
    clamp_day_of_month,
    format_time_of_day,
    parse_time_of_day,
)


class RecipientCreate(BaseModel):
    """A recipient of a new nudge."""

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr


class NudgeCreate(BaseModel):
    """Request to create a nudge."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    team_id: str = Field(..., min_length=1)
    frequency: Frequency
    interval: int = Field(1, ge=1, le=365)
    time_of_day: str = Field(..., description='12-hour clock, e.g. "9:00 AM"')
    timezone: str = Field(..., min_length=1, description="IANA timezone name")
    start_date: date | None = Field(None, description="Defaults to today in the nudge's timezone")
    day_of_week: int | None = Field(None, ge=0, le=6)  # 0 = Sunday
    monthly_type: MonthlyType | None = None
    day_of_month: int | None = Field(None, ge=1, le=31)
    nth_occurrence: int | None = None
    day_of_week_for_monthly: int | None = Field(None, ge=0, le=6)
    end_type: EndType = EndType.NEVER
    end_date: date | None = None
    end_after_occurrences: int | None = Field(None, ge=1)
    recipients: list[RecipientCreate] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("time_of_day")
    @classmethod
    def normalize_time_of_day(cls, v: str) -> str:
        return format_time_of_day(parse_time_of_day(v))

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("day_of_month")
    @classmethod
    def clamp_day(cls, v: int | None) -> int | None:
        return clamp_day_of_month(v) if v is not None else None

    @field_validator("nth_occurrence")
    @classmethod
    def validate_nth(cls, v: int | None) -> int | None:
        if v is not None and v not in ORDINALS:
            raise ValueError("Occurrence must be 1, 2, 3, 4 or -1 (last)")
        return v

    def _reject_set(self, fields: tuple[str, ...], reason: str) -> None:
        for field in fields:
            if getattr(self, field) is not None:
                raise ValueError(f"{field} is not allowed {reason}")

    @model_validator(mode="after")
    def check_selectors(self) -> "NudgeCreate":
        monthly_fields = ("monthly_type", "day_of_month", "nth_occurrence", "day_of_week_for_monthly")

        if self.frequency == Frequency.WEEKLY:
            if self.day_of_week is None:
                raise ValueError("Day of week is required for weekly reminders")
        else:
            self._reject_set(("day_of_week",), "unless the frequency is WEEKLY")

        if self.frequency == Frequency.MONTHLY:
            if self.monthly_type is None:
                raise ValueError("Monthly type is required for monthly reminders")
            if self.monthly_type == MonthlyType.DAY_OF_MONTH:
                if self.day_of_month is None:
                    raise ValueError("Day of month is required")
                self._reject_set(("nth_occurrence", "day_of_week_for_monthly"), "for DAY_OF_MONTH reminders")
            if self.monthly_type == MonthlyType.NTH_DAY_OF_WEEK:
                if self.nth_occurrence is None or self.day_of_week_for_monthly is None:
                    raise ValueError("Occurrence and day of week are required")
                self._reject_set(("day_of_month",), "for NTH_DAY_OF_WEEK reminders")
        else:
            self._reject_set(monthly_fields, "unless the frequency is MONTHLY")

        if self.end_type == EndType.ON_DATE:
            if self.end_date is None:
                raise ValueError("End date is required")
            if self.start_date and self.end_date < self.start_date:
                raise ValueError("End date must not be before the start date")
        else:
            self._reject_set(("end_date",), "unless the end type is ON_DATE")

        if self.end_type == EndType.AFTER_OCCURRENCES:
            if self.end_after_occurrences is None:
                raise ValueError("Number of occurrences is required")
        else:
            self._reject_set(("end_after_occurrences",), "unless the end type is AFTER_OCCURRENCES")

        return self


class RecipientResponse(BaseModel):
    """Nudge recipient."""

    id: str
    name: str
    email: str

    class Config:
        from_attributes = True


class InstanceResponse(BaseModel):
    """One materialized occurrence of a nudge."""

    id: str
    slug: str
    occurrence_date: date
    scheduled_for: datetime
    status: str
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class NudgeResponse(BaseModel):
    """Nudge details."""

    id: str
    slug: str
    name: str
    description: str | None = None
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
    end_type: str
    end_date: date | None = None
    end_after_occurrences: int | None = None
    recipients: list[RecipientResponse]
    instance_count: int
    latest_instance: InstanceResponse | None = None
    schedule_info: str
    next_scheduled: datetime | None = None

    class Config:
        from_attributes = True


class OccurrenceResponse(BaseModel):
    """Upcoming occurrence preview."""

    local_date: date
    scheduled_for: datetime

    class Config:
        from_attributes = True


class ScheduleResponse(BaseModel):
    """Upcoming occurrences of a nudge."""

    slug: str
    timezone: str
    schedule_info: str
    occurrences: list[OccurrenceResponse]
