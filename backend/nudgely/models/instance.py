"""Materialized occurrence models."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from nudgely.database import Base
from nudgely.timeutils import utcnow_iso


class NudgeInstance(Base):
    """One occurrence of a nudge at a specific scheduled time."""
    
    __tablename__ = "nudge_instances"
    __table_args__ = (
        UniqueConstraint("nudge_id", "occurrence_date", name="uq_nudge_occurrence"),
        Index("ix_nudge_instances_status", "status"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    nudge_id = Column(String(36), ForeignKey("nudges.id", ondelete="CASCADE"), nullable=False, index=True)
    slug = Column(String(140), unique=True, nullable=False)  # nudge slug + occurrence date
    occurrence_date = Column(String(10), nullable=False)  # YYYY-MM-DD, local
    scheduled_for = Column(String(26), nullable=False)  # UTC
    
    # PENDING, SENT, COMPLETED, EXPIRED
    status = Column(String(20), nullable=False, default="PENDING")
    sent_at = Column(String(26))
    completed_at = Column(String(26))
    expired_at = Column(String(26))
    
    created_at = Column(String(26), default=utcnow_iso)
    
    # Relationships
    nudge = relationship("Nudge", back_populates="instances")
    events = relationship("ReminderEvent", back_populates="instance", cascade="all, delete-orphan")
    completion = relationship("NudgeCompletion", back_populates="instance", uselist=False, cascade="all, delete-orphan")


class ReminderEvent(Base):
    """A recipient-facing reminder tied to an instance."""
    
    __tablename__ = "nudge_reminder_events"
    __table_args__ = (
        Index("ix_reminder_events_unsent", "sent", "attempts"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    nudge_instance_id = Column(String(36), ForeignKey("nudge_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(100), nullable=False)
    token = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(String(26), nullable=False)
    
    # Delivery tracking
    sent = Column(Integer, default=0)  # SQLite boolean
    attempts = Column(Integer, default=0)
    last_attempt_at = Column(String(26))
    error_message = Column(Text)
    
    # Completion
    completed_at = Column(String(26))
    
    created_at = Column(String(26), default=utcnow_iso)
    
    instance = relationship("NudgeInstance", back_populates="events")


class NudgeCompletion(Base):
    """Who completed an instance, and when."""
    
    __tablename__ = "nudge_completions"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    nudge_id = Column(String(36), ForeignKey("nudges.id", ondelete="CASCADE"), nullable=False, index=True)
    nudge_instance_id = Column(String(36), ForeignKey("nudge_instances.id", ondelete="CASCADE"), unique=True, nullable=False)
    reminder_token = Column(String(64), nullable=False)
    completed_by = Column(String(255), nullable=False)  # recipient email
    completed_by_name = Column(String(100))
    comments = Column(Text)
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    created_at = Column(String(26), default=utcnow_iso)
    
    instance = relationship("NudgeInstance", back_populates="completion")
