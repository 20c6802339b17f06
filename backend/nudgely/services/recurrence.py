"""Recurrence rule evaluation for nudges.

Everything here is a pure function of a ``RecurrenceRule`` and a reference
instant. Local dates are derived through the IANA timezone database, and
"every N periods" is counted in whole local days, weeks or months so DST
transitions never shift the fire time.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from dateutil.relativedelta import relativedelta, weekdays

from nudgely.enums import EndType, Frequency, MonthlyType
from nudgely.exceptions import InvalidTimeFormat
from nudgely.timeutils import ensure_utc, from_utc, local_to_utc

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
ORDINALS = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}
MAX_DAY_OF_MONTH = 28
DEFAULT_TOLERANCE = timedelta(minutes=15)

_TIME_OF_DAY = re.compile(r"(0?[1-9]|1[0-2]):([0-5][0-9]) (AM|PM)")


@dataclass(frozen=True)
class RecurrenceRule:
    """Frequency configuration of a nudge.

    ``day_of_week`` and ``day_of_week_for_monthly`` use 0 = Sunday.
    ``start_date`` is the local date that anchors the interval phase.
    """

    frequency: Frequency
    time_of_day: str
    timezone: str
    start_date: date
    interval: int = 1
    day_of_week: int | None = None
    monthly_type: MonthlyType | None = None
    day_of_month: int | None = None
    nth_occurrence: int | None = None
    day_of_week_for_monthly: int | None = None
    end_type: EndType = EndType.NEVER
    end_date: date | None = None
    end_after_occurrences: int | None = None
    occurrences_so_far: int = 0


@dataclass(frozen=True)
class Occurrence:
    """A logical firing point: the local date and its UTC instant."""

    local_date: date
    scheduled_for: datetime


def parse_time_of_day(value: str) -> time:
    """Parse a 12-hour clock string such as "9:00 AM" or "12:30 PM".

    Raises:
        InvalidTimeFormat: for anything else, including 24-hour values,
            lowercase suffixes and stray whitespace.
    """
    if not isinstance(value, str):
        raise InvalidTimeFormat(value)
    match = _TIME_OF_DAY.fullmatch(value)
    if not match:
        raise InvalidTimeFormat(value)

    hour = int(match.group(1)) % 12
    if match.group(3) == "PM":
        hour += 12
    return time(hour, int(match.group(2)))


def format_time_of_day(at: time) -> str:
    """Inverse of parse_time_of_day."""
    suffix = "AM" if at.hour < 12 else "PM"
    return f"{at.hour % 12 or 12}:{at.minute:02d} {suffix}"


def clamp_day_of_month(day: int) -> int:
    return min(max(day, 1), MAX_DAY_OF_MONTH)


def weekday_index(day: date) -> int:
    """Day of week with 0 = Sunday."""
    return (day.weekday() + 1) % 7


def nth_weekday_of_month(year: int, month: int, nth: int, day_of_week: int) -> date:
    """Find the nth (1-4, or -1 for last) given weekday of a month."""
    if not 0 <= day_of_week <= 6:
        raise ValueError(f"Invalid day of week: {day_of_week}")
    # dateutil counts from Monday
    target = weekdays[(day_of_week - 1) % 7]
    first = date(year, month, 1)

    if nth == -1:
        return first + relativedelta(day=31, weekday=target(-1))
    if nth not in (1, 2, 3, 4):
        raise ValueError(f"Invalid nth occurrence: {nth}")
    return first + relativedelta(weekday=target(nth))


def reminder_ttl(frequency: Frequency) -> timedelta:
    """How long a reminder's completion link stays valid."""
    if frequency == Frequency.DAILY:
        return timedelta(days=1)
    if frequency == Frequency.WEEKLY:
        return timedelta(days=7)
    return timedelta(days=30)


def _monthly_date(rule: RecurrenceRule, year: int, month: int) -> date:
    if rule.monthly_type == MonthlyType.DAY_OF_MONTH:
        if rule.day_of_month is None:
            raise ValueError("Monthly rule requires day_of_month")
        return date(year, month, clamp_day_of_month(rule.day_of_month))
    if rule.monthly_type == MonthlyType.NTH_DAY_OF_WEEK:
        if rule.nth_occurrence is None or rule.day_of_week_for_monthly is None:
            raise ValueError("Monthly rule requires nth_occurrence and day_of_week_for_monthly")
        return nth_weekday_of_month(year, month, rule.nth_occurrence, rule.day_of_week_for_monthly)
    raise ValueError(f"Unknown monthly type: {rule.monthly_type}")


def _first_weekly_date(rule: RecurrenceRule) -> date:
    offset = (rule.day_of_week - weekday_index(rule.start_date)) % 7
    return rule.start_date + timedelta(days=offset)


def _first_monthly_date(rule: RecurrenceRule) -> date:
    start = rule.start_date
    candidate = _monthly_date(rule, start.year, start.month)
    if candidate < start:
        following = start + relativedelta(months=1)
        candidate = _monthly_date(rule, following.year, following.month)
    return candidate


def matches_date(rule: RecurrenceRule, day: date) -> bool:
    """Whether the rule has an occurrence on the given local date."""
    if rule.interval < 1:
        raise ValueError(f"Interval must be at least 1, got {rule.interval}")
    if day < rule.start_date:
        return False

    if rule.frequency == Frequency.DAILY:
        return (day - rule.start_date).days % rule.interval == 0

    if rule.frequency == Frequency.WEEKLY:
        if rule.day_of_week is None:
            raise ValueError("Weekly rule requires day_of_week")
        if weekday_index(day) != rule.day_of_week:
            return False
        weeks = (day - _first_weekly_date(rule)).days // 7
        return weeks % rule.interval == 0

    if rule.frequency == Frequency.MONTHLY:
        if day != _monthly_date(rule, day.year, day.month):
            return False
        first = _first_monthly_date(rule)
        months = (day.year - first.year) * 12 + (day.month - first.month)
        return months >= 0 and months % rule.interval == 0

    raise ValueError(f"Unknown frequency: {rule.frequency}")


def has_ended(rule: RecurrenceRule, now: datetime) -> bool:
    """Whether the end condition is already satisfied at ``now``."""
    if rule.end_type == EndType.ON_DATE and rule.end_date:
        return from_utc(now, rule.timezone).date() > rule.end_date

    if rule.end_type == EndType.AFTER_OCCURRENCES and rule.end_after_occurrences:
        return rule.occurrences_so_far >= rule.end_after_occurrences

    return False


def due_occurrence(
    rule: RecurrenceRule,
    now: datetime,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> Occurrence | None:
    """The occurrence that should fire at ``now``, if any.

    An occurrence is due while ``scheduled_for <= now < scheduled_for + tolerance``.
    Yesterday's local date is checked too so a window spanning local
    midnight is not lost.
    """
    now = ensure_utc(now)
    at = parse_time_of_day(rule.time_of_day)

    if has_ended(rule, now):
        return None

    today = from_utc(now, rule.timezone).date()
    for day in (today, today - timedelta(days=1)):
        if rule.end_type == EndType.ON_DATE and rule.end_date and day > rule.end_date:
            continue
        if not matches_date(rule, day):
            continue
        scheduled = local_to_utc(day, at, rule.timezone)
        if scheduled <= now < scheduled + tolerance:
            return Occurrence(local_date=day, scheduled_for=scheduled)

    return None


def is_due(rule: RecurrenceRule, now: datetime, tolerance: timedelta = DEFAULT_TOLERANCE) -> bool:
    return due_occurrence(rule, now, tolerance) is not None


def follow_up_day(
    rule: RecurrenceRule,
    created_at: datetime,
    now: datetime,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> date | None:
    """Local day whose time-of-day window contains ``now``, for an open instance.

    Follow-ups go out at the nudge's time of day on any later local day than
    the one the instance was created on, whether or not the rule matches it.
    """
    now = ensure_utc(now)
    at = parse_time_of_day(rule.time_of_day)
    created_on = from_utc(created_at, rule.timezone).date()

    today = from_utc(now, rule.timezone).date()
    for day in (today, today - timedelta(days=1)):
        if day <= created_on:
            continue
        scheduled = local_to_utc(day, at, rule.timezone)
        if scheduled <= now < scheduled + tolerance:
            return day

    return None


def _search_horizon_days(rule: RecurrenceRule) -> int:
    """Upper bound on the gap between two consecutive occurrences."""
    if rule.frequency == Frequency.DAILY:
        return rule.interval
    if rule.frequency == Frequency.WEEKLY:
        return 7 * (rule.interval + 1)
    return 31 * (rule.interval + 1)


def upcoming_occurrences(rule: RecurrenceRule, after: datetime, count: int = 1) -> list[Occurrence]:
    """Up to ``count`` occurrences strictly after ``after``, respecting the end condition."""
    after = ensure_utc(after)
    at = parse_time_of_day(rule.time_of_day)

    remaining = count
    if rule.end_type == EndType.AFTER_OCCURRENCES and rule.end_after_occurrences:
        remaining = min(count, rule.end_after_occurrences - rule.occurrences_so_far)

    found: list[Occurrence] = []
    if remaining <= 0:
        return found

    first_day = max(from_utc(after, rule.timezone).date() - timedelta(days=1), rule.start_date)
    for offset in range(_search_horizon_days(rule) * count + 2):
        day = first_day + timedelta(days=offset)
        if rule.end_type == EndType.ON_DATE and rule.end_date and day > rule.end_date:
            break
        if not matches_date(rule, day):
            continue
        scheduled = local_to_utc(day, at, rule.timezone)
        if scheduled > after:
            found.append(Occurrence(local_date=day, scheduled_for=scheduled))
            if len(found) >= remaining:
                break

    return found


def next_occurrence(rule: RecurrenceRule, after: datetime) -> datetime | None:
    """The next UTC instant at which the rule fires after ``after``."""
    occurrences = upcoming_occurrences(rule, after, count=1)
    return occurrences[0].scheduled_for if occurrences else None


def format_schedule_info(rule: RecurrenceRule) -> str:
    """Human-readable schedule, e.g. "Every 2 weeks on Wednesday at 9:00 AM"."""
    if rule.frequency == Frequency.DAILY:
        period = "day" if rule.interval == 1 else f"{rule.interval} days"
        return f"Every {period} at {rule.time_of_day}"

    if rule.frequency == Frequency.WEEKLY:
        period = "week" if rule.interval == 1 else f"{rule.interval} weeks"
        day_name = DAY_NAMES[rule.day_of_week] if rule.day_of_week is not None else "an unset day"
        return f"Every {period} on {day_name} at {rule.time_of_day}"

    period = "month" if rule.interval == 1 else f"{rule.interval} months"
    if rule.monthly_type == MonthlyType.NTH_DAY_OF_WEEK and rule.day_of_week_for_monthly is not None:
        ordinal = ORDINALS.get(rule.nth_occurrence, f"#{rule.nth_occurrence}")
        return f"Every {period} on the {ordinal} {DAY_NAMES[rule.day_of_week_for_monthly]} at {rule.time_of_day}"
    return f"Every {period} on day {clamp_day_of_month(rule.day_of_month or 1)} at {rule.time_of_day}"
