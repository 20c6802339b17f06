"""Time and timezone utilities."""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_utc(dt: datetime, tz: str) -> datetime:
    """Convert a UTC datetime to the given timezone."""
    return ensure_utc(dt).astimezone(ZoneInfo(tz))


def local_to_utc(day: date, at: time, tz: str) -> datetime:
    """Wall-clock time on a local date, as a UTC instant.

    Non-existent times (spring-forward gap) resolve with the pre-transition
    offset, ambiguous times (fall-back) to their first occurrence.
    """
    local = datetime.combine(day, at).replace(tzinfo=ZoneInfo(tz), fold=0)
    return local.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize as naive UTC ISO-8601, the storage format for timestamps."""
    return ensure_utc(dt).replace(tzinfo=None).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp into an aware UTC datetime."""
    return ensure_utc(datetime.fromisoformat(value))


def utcnow_iso() -> str:
    return to_iso(utcnow())
