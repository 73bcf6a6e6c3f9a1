"""Booking model definitions."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Numeric, String, Text, text

from booking_platform.database import ACTIVE_BOOKING_INDEX, Base


class BookingStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


class PaymentStatus(str, Enum):
    UNPAID = 'unpaid'
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    REFUNDED = 'refunded'
    PARTIALLY_REFUNDED = 'partially_refunded'


# Bookings in these states hold their interval on the builder's calendar.
BLOCKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

_ACTIVE_WHERE = text("status IN ('pending', 'confirmed')")


class Booking(Base):
    """A client's reservation of one session with a builder."""
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_bookings_end_after_start'),
        Index('idx_bookings_builder_time_range', 'builder_id', 'start_time', 'end_time'),
        Index('idx_bookings_checkout_session', 'checkout_session_id'),
        Index(
            ACTIVE_BOOKING_INDEX,
            'builder_id',
            'start_time',
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_type_id = Column(String, ForeignKey("session_types.id"), nullable=False)
    builder_id = Column(String, ForeignKey("users.id"), nullable=False)
    client_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)  # UTC
    end_time = Column(DateTime, nullable=False)  # UTC
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.UNPAID.value)
    payment_id = Column(String)
    checkout_session_id = Column(String)
    payment_failure_reason = Column(String)
    amount = Column(Numeric(10, 2))
    amount_refunded = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String)
    client_timezone = Column(String, nullable=False, default='UTC')
    builder_timezone = Column(String, nullable=False, default='UTC')
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
