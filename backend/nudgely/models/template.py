"""Nudge template model."""
import uuid

from sqlalchemy import Column, Integer, String, Text

from nudgely.database import Base
from nudgely.timeutils import utcnow_iso


class NudgeTemplate(Base):
    """Ready-made nudge definition (seeded from YAML files)."""
    
    __tablename__ = "nudge_templates"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(50), nullable=False)  # TEAM, FINANCE, OPERATIONS, ...
    tier = Column(String(20), default="FREE")  # FREE, PRO
    frequency = Column(String(20), nullable=False)
    interval = Column(Integer, default=1)
    time_of_day = Column(String(8), default="9:00 AM")
    day_of_week = Column(Integer)
    monthly_type = Column(String(20))
    day_of_month = Column(Integer)
    nth_occurrence = Column(Integer)
    day_of_week_for_monthly = Column(Integer)
    created_at = Column(String(26), default=utcnow_iso)
    updated_at = Column(String(26), default=utcnow_iso, onupdate=utcnow_iso)
