"""SQLAlchemy models package."""
from nudgely.models.nudge import Nudge, Recipient
from nudgely.models.instance import NudgeCompletion, NudgeInstance, ReminderEvent
from nudgely.models.template import NudgeTemplate

__all__ = [
    "Nudge",
    "Recipient",
    "NudgeInstance",
    "ReminderEvent",
    "NudgeCompletion",
    "NudgeTemplate",
]
