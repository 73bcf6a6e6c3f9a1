"""Availability model definitions."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, String

from booking_platform.database import Base


class AvailabilityRule(Base):
    """Weekly recurring open hours for a builder, in the builder's local time."""
    __tablename__ = "availability_rules"
    __table_args__ = (
        CheckConstraint('day_of_week >= 0 AND day_of_week <= 6', name='ck_availability_rules_day_of_week'),
        Index('idx_availability_rules_builder_day', 'builder_id', 'day_of_week'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    builder_id = Column(String, ForeignKey("users.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(String, nullable=False)  # HH:MM
    end_time = Column(String, nullable=False)  # HH:MM
    is_available = Column(Boolean, nullable=False, default=True)
    effective_date = Column(Date)
    expiration_date = Column(Date)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AvailabilityException(Base):
    """One-off override of the weekly rules (holiday, blocked afternoon, extra hours)."""
    __tablename__ = "availability_exceptions"
    __table_args__ = (
        Index('idx_availability_exceptions_builder_range', 'builder_id', 'start_datetime', 'end_datetime'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    builder_id = Column(String, ForeignKey("users.id"), nullable=False)
    start_datetime = Column(DateTime, nullable=False)  # UTC
    end_datetime = Column(DateTime, nullable=False)  # UTC
    is_available = Column(Boolean, nullable=False, default=False)
    title = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
