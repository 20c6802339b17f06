"""Enumerated values stored as plain strings."""
import enum


class NudgeStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"
    DISABLED = "DISABLED"


class Frequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class MonthlyType(str, enum.Enum):
    DAY_OF_MONTH = "DAY_OF_MONTH"
    NTH_DAY_OF_WEEK = "NTH_DAY_OF_WEEK"


class EndType(str, enum.Enum):
    NEVER = "NEVER"
    ON_DATE = "ON_DATE"
    AFTER_OCCURRENCES = "AFTER_OCCURRENCES"


class InstanceStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
