"""Session type model definitions."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from booking_platform.database import Base


class SessionType(Base):
    """A bookable offering with a fixed duration and price."""
    __tablename__ = "session_types"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    builder_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default='')
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default='usd')
    is_active = Column(Boolean, nullable=False, default=True)
    max_participants = Column(Integer)
    display_order = Column(Integer, nullable=False, default=999)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
