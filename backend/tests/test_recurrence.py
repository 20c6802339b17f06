from datetime import date, datetime, time, timedelta, timezone

import pytest

from nudgely.enums import EndType, Frequency, MonthlyType
from nudgely.exceptions import InvalidTimeFormat
from nudgely.services.recurrence import (
    RecurrenceRule,
    due_occurrence,
    follow_up_day,
    format_schedule_info,
    has_ended,
    is_due,
    matches_date,
    next_occurrence,
    nth_weekday_of_month,
    parse_time_of_day,
    reminder_ttl,
    upcoming_occurrences,
    weekday_index,
)
from nudgely.timeutils import from_utc


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def weekly_sydney(**overrides):
    fields = dict(
        frequency=Frequency.WEEKLY,
        day_of_week=3,
        time_of_day="9:00 AM",
        timezone="Australia/Sydney",
        start_date=date(2026, 10, 1),
    )
    fields.update(overrides)
    return RecurrenceRule(**fields)


def fired_dates(rule, start, end, step=timedelta(minutes=15)):
    fired = []
    now = start
    while now < end:
        occurrence = due_occurrence(rule, now)
        if occurrence:
            fired.append(occurrence.local_date)
        now += step
    return fired


@pytest.mark.parametrize(
    "value, expected",
    [
        ("9:00 AM", time(9, 0)),
        ("09:05 PM", time(21, 5)),
        ("12:30 PM", time(12, 30)),
        ("12:00 AM", time(0, 0)),
    ],
)
def test_parse_time_of_day(value, expected):
    assert parse_time_of_day(value) == expected


@pytest.mark.parametrize("value", ["13:00", "21:00", "9:00 am", " 9:00 AM", "9:00AM", "9:60 AM", "0:30 AM", "", None])
def test_parse_time_of_day_rejects_malformed_values(value):
    with pytest.raises(InvalidTimeFormat):
        parse_time_of_day(value)


def test_invalid_time_format_is_a_value_error():
    with pytest.raises(ValueError):
        parse_time_of_day("25:00 PM")


def test_weekly_due_on_configured_weekday_within_tolerance():
    rule = weekly_sydney()

    # Wednesday 21 Oct 2026, 09:00 AEDT
    occurrence = due_occurrence(rule, utc(2026, 10, 20, 22, 0))
    assert occurrence.local_date == date(2026, 10, 21)
    assert occurrence.scheduled_for == utc(2026, 10, 20, 22, 0)

    assert is_due(rule, utc(2026, 10, 20, 22, 14))
    assert not is_due(rule, utc(2026, 10, 20, 22, 15))
    assert not is_due(rule, utc(2026, 10, 20, 21, 59))


def test_weekly_not_due_on_other_weekdays():
    rule = weekly_sydney()

    # Thursday 22 Oct 2026, 09:00 AEDT
    assert not is_due(rule, utc(2026, 10, 21, 22, 0))


def test_weekly_next_occurrence_always_lands_on_weekday():
    rule = weekly_sydney()
    after = utc(2026, 10, 1, 0, 0)

    for _ in range(20):
        upcoming = next_occurrence(rule, after)
        local = from_utc(upcoming, rule.timezone)
        assert weekday_index(local.date()) == 3
        assert (local.hour, local.minute) == (9, 0)
        assert upcoming > after
        after = upcoming + timedelta(hours=13)


def test_daily_fires_once_on_spring_forward_day():
    rule = RecurrenceRule(
        frequency=Frequency.DAILY,
        time_of_day="2:30 AM",
        timezone="America/New_York",
        start_date=date(2026, 3, 1),
    )

    fired = fired_dates(rule, utc(2026, 3, 7, 5, 0), utc(2026, 3, 10, 4, 0))

    assert fired == [date(2026, 3, 7), date(2026, 3, 8), date(2026, 3, 9)]


def test_spring_forward_gap_resolves_after_the_jump():
    rule = RecurrenceRule(
        frequency=Frequency.DAILY,
        time_of_day="2:30 AM",
        timezone="America/New_York",
        start_date=date(2026, 3, 1),
    )

    occurrence = due_occurrence(rule, utc(2026, 3, 8, 7, 30))

    assert occurrence.local_date == date(2026, 3, 8)
    assert from_utc(occurrence.scheduled_for, rule.timezone).hour == 3


def test_daily_does_not_fire_twice_on_fall_back_day():
    rule = RecurrenceRule(
        frequency=Frequency.DAILY,
        time_of_day="1:30 AM",
        timezone="America/New_York",
        start_date=date(2026, 10, 1),
    )

    fired = fired_dates(rule, utc(2026, 10, 31, 4, 0), utc(2026, 11, 3, 5, 0))

    assert fired == [date(2026, 10, 31), date(2026, 11, 1), date(2026, 11, 2)]


def test_window_crossing_local_midnight_uses_previous_date():
    rule = RecurrenceRule(
        frequency=Frequency.DAILY,
        time_of_day="11:55 PM",
        timezone="UTC",
        start_date=date(2026, 10, 1),
    )

    occurrence = due_occurrence(rule, utc(2026, 10, 20, 0, 5))

    assert occurrence.local_date == date(2026, 10, 19)
    assert occurrence.scheduled_for == utc(2026, 10, 19, 23, 55)


def test_monthly_day_31_is_clamped_to_28_including_february():
    rule = RecurrenceRule(
        frequency=Frequency.MONTHLY,
        monthly_type=MonthlyType.DAY_OF_MONTH,
        day_of_month=31,
        time_of_day="9:00 AM",
        timezone="UTC",
        start_date=date(2026, 1, 1),
    )

    occurrences = upcoming_occurrences(rule, utc(2026, 1, 1), count=4)

    assert [o.local_date for o in occurrences] == [
        date(2026, 1, 28),
        date(2026, 2, 28),
        date(2026, 3, 28),
        date(2026, 4, 28),
    ]
    assert not matches_date(rule, date(2026, 1, 31))
    assert is_due(rule, utc(2026, 2, 28, 9, 5))


def test_nth_weekday_of_month():
    assert nth_weekday_of_month(2026, 10, -1, 5) == date(2026, 10, 30)
    assert nth_weekday_of_month(2026, 10, 1, 1) == date(2026, 10, 5)
    assert nth_weekday_of_month(2026, 3, 2, 0) == date(2026, 3, 8)
    assert nth_weekday_of_month(2026, 2, 4, 6) == date(2026, 2, 28)

    with pytest.raises(ValueError):
        nth_weekday_of_month(2026, 10, 5, 1)


def test_monthly_last_friday():
    rule = RecurrenceRule(
        frequency=Frequency.MONTHLY,
        monthly_type=MonthlyType.NTH_DAY_OF_WEEK,
        nth_occurrence=-1,
        day_of_week_for_monthly=5,
        time_of_day="2:00 PM",
        timezone="Europe/London",
        start_date=date(2026, 10, 1),
    )

    assert matches_date(rule, date(2026, 10, 30))
    assert not matches_date(rule, date(2026, 10, 23))
    assert [o.local_date for o in upcoming_occurrences(rule, utc(2026, 10, 1), count=3)] == [
        date(2026, 10, 30),
        date(2026, 11, 27),
        date(2026, 12, 25),
    ]


def test_interval_counts_whole_periods_from_start_date():
    biweekly = weekly_sydney(interval=2)
    assert matches_date(biweekly, date(2026, 10, 7))
    assert not matches_date(biweekly, date(2026, 10, 14))
    assert matches_date(biweekly, date(2026, 10, 21))
    assert not matches_date(biweekly, date(2026, 10, 28))

    every_third_day = RecurrenceRule(
        frequency=Frequency.DAILY,
        interval=3,
        time_of_day="9:00 AM",
        timezone="UTC",
        start_date=date(2026, 10, 1),
    )
    assert matches_date(every_third_day, date(2026, 10, 4))
    assert not matches_date(every_third_day, date(2026, 10, 5))
    assert not matches_date(every_third_day, date(2026, 9, 28))

    quarterly = RecurrenceRule(
        frequency=Frequency.MONTHLY,
        interval=3,
        monthly_type=MonthlyType.DAY_OF_MONTH,
        day_of_month=20,
        time_of_day="9:00 AM",
        timezone="UTC",
        start_date=date(2026, 1, 15),
    )
    assert matches_date(quarterly, date(2026, 1, 20))
    assert not matches_date(quarterly, date(2026, 2, 20))
    assert matches_date(quarterly, date(2026, 4, 20))


def test_invalid_interval_raises():
    with pytest.raises(ValueError):
        matches_date(weekly_sydney(interval=0), date(2026, 10, 21))


def test_end_on_date():
    rule = weekly_sydney(end_type=EndType.ON_DATE, end_date=date(2026, 10, 21))

    assert is_due(rule, utc(2026, 10, 20, 22, 0))
    assert not has_ended(rule, utc(2026, 10, 21, 12, 0))
    assert has_ended(rule, utc(2026, 10, 21, 14, 0))
    assert next_occurrence(rule, utc(2026, 10, 20, 23, 0)) is None


def test_end_after_occurrences():
    finished = weekly_sydney(end_type=EndType.AFTER_OCCURRENCES, end_after_occurrences=3, occurrences_so_far=3)
    assert has_ended(finished, utc(2026, 10, 20, 22, 0))
    assert not is_due(finished, utc(2026, 10, 20, 22, 0))

    running = weekly_sydney(end_type=EndType.AFTER_OCCURRENCES, end_after_occurrences=3, occurrences_so_far=1)
    assert len(upcoming_occurrences(running, utc(2026, 10, 1), count=5)) == 2


def test_format_schedule_info():
    assert format_schedule_info(weekly_sydney(interval=2)) == "Every 2 weeks on Wednesday at 9:00 AM"
    assert (
        format_schedule_info(
            RecurrenceRule(
                frequency=Frequency.MONTHLY,
                monthly_type=MonthlyType.NTH_DAY_OF_WEEK,
                nth_occurrence=-1,
                day_of_week_for_monthly=5,
                time_of_day="2:00 PM",
                timezone="UTC",
                start_date=date(2026, 1, 1),
            )
        )
        == "Every month on the last Friday at 2:00 PM"
    )
    assert (
        format_schedule_info(
            RecurrenceRule(frequency=Frequency.DAILY, time_of_day="9:00 AM", timezone="UTC", start_date=date(2026, 1, 1))
        )
        == "Every day at 9:00 AM"
    )


def test_reminder_ttl():
    assert reminder_ttl(Frequency.DAILY) == timedelta(days=1)
    assert reminder_ttl(Frequency.WEEKLY) == timedelta(days=7)
    assert reminder_ttl(Frequency.MONTHLY) == timedelta(days=30)


def test_follow_up_day_skips_creation_day_and_other_times():
    rule = weekly_sydney()
    created_at = utc(2026, 10, 20, 22, 0)  # Wednesday 9:00 AM in Sydney

    assert follow_up_day(rule, created_at, created_at + timedelta(minutes=5)) is None
    assert follow_up_day(rule, created_at, utc(2026, 10, 21, 22, 5)) == date(2026, 10, 22)
    assert follow_up_day(rule, created_at, utc(2026, 10, 21, 22, 15)) is None
    assert follow_up_day(rule, created_at, utc(2026, 10, 22, 3, 0)) is None


def test_follow_up_window_crossing_local_midnight():
    rule = RecurrenceRule(
        frequency=Frequency.DAILY,
        time_of_day="11:55 PM",
        timezone="UTC",
        start_date=date(2026, 10, 1),
    )

    assert follow_up_day(rule, utc(2026, 10, 18, 23, 55), utc(2026, 10, 20, 0, 5)) == date(2026, 10, 19)
    assert follow_up_day(rule, utc(2026, 10, 19, 23, 55), utc(2026, 10, 20, 0, 5)) is None
