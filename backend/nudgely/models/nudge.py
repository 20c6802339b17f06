"""Nudge definition models."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from nudgely.database import Base
from nudgely.timeutils import utcnow_iso


class Nudge(Base):
    """A recurring reminder definition."""
    
    __tablename__ = "nudges"
    __table_args__ = (
        Index("ix_nudges_status", "status"),
        Index("ix_nudges_team", "team_id"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(120), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    team_id = Column(String(36), nullable=False)
    
    # Lifecycle: ACTIVE, PAUSED, FINISHED, DISABLED
    status = Column(String(20), nullable=False, default="ACTIVE")
    
    # Recurrence
    frequency = Column(String(20), nullable=False)  # DAILY, WEEKLY, MONTHLY
    interval = Column(Integer, nullable=False, default=1)
    time_of_day = Column(String(8), nullable=False)  # "9:00 AM"
    timezone = Column(String(64), nullable=False)  # IANA name
    start_date = Column(String(10), nullable=False)  # YYYY-MM-DD, local; interval anchor
    day_of_week = Column(Integer)  # 0 = Sunday, WEEKLY only
    monthly_type = Column(String(20))  # DAY_OF_MONTH, NTH_DAY_OF_WEEK
    day_of_month = Column(Integer)  # 1-28
    nth_occurrence = Column(Integer)  # 1-4, -1 = last
    day_of_week_for_monthly = Column(Integer)
    
    # End condition: NEVER, ON_DATE, AFTER_OCCURRENCES
    end_type = Column(String(20), nullable=False, default="NEVER")
    end_date = Column(String(10))  # YYYY-MM-DD, local
    end_after_occurrences = Column(Integer)
    
    last_instance_created_at = Column(String(26))
    
    # Timestamps
    created_at = Column(String(26), default=utcnow_iso)
    updated_at = Column(String(26), default=utcnow_iso, onupdate=utcnow_iso)
    
    # Relationships
    recipients = relationship("Recipient", back_populates="nudge", cascade="all, delete-orphan")
    instances = relationship("NudgeInstance", back_populates="nudge", cascade="all, delete-orphan")


class Recipient(Base):
    """A person who receives a nudge's reminders."""
    
    __tablename__ = "nudge_recipients"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    nudge_id = Column(String(36), ForeignKey("nudges.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    created_at = Column(String(26), default=utcnow_iso)
    
    nudge = relationship("Nudge", back_populates="recipients")
