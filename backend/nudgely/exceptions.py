"""Exceptions raised by the scheduling engine."""


class NudgelyError(Exception):
    """Base class for scheduling engine errors."""


class InvalidTimeFormat(NudgelyError, ValueError):
    """A stored time-of-day is not a 12-hour clock string such as "9:00 AM"."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid time of day: {value!r} (expected e.g. '9:00 AM')")


class RuleEvaluationError(NudgelyError):
    """Unexpected failure while evaluating a nudge's recurrence rule."""

    def __init__(self, nudge_id: str, cause: BaseException):
        self.nudge_id = nudge_id
        self.cause = cause
        super().__init__(f"Rule evaluation failed for nudge {nudge_id}: {cause}")


class DuplicateInstance(NudgelyError):
    """An instance for this nudge occurrence already exists."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Instance already materialized: {slug}")


class DispatchFailure(NudgelyError):
    """A reminder could not be delivered."""

    def __init__(self, reminder_id: str, reason: str):
        self.reminder_id = reminder_id
        self.reason = reason
        super().__init__(f"Dispatch failed for reminder {reminder_id}: {reason}")
