"""Processed webhook event ledger."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint

from booking_platform.database import Base

STRIPE_SOURCE = 'stripe'


class ProcessedWebhookEvent(Base):
    """One row per provider event id already applied; replays find their row and stop."""
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint('source', 'event_id', name='uq_processed_webhook_events_source_event_id'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column(String, nullable=False, default=STRIPE_SOURCE)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False)  # processed/ignored/failed
    booking_id = Column(String)
    error = Column(Text)
    received_at = Column(DateTime, default=datetime.utcnow)
