"""
Booking records and their two independent state machines.

``status``          pending -> confirmed | cancelled, confirmed -> completed | cancelled
``payment_status``  unpaid -> pending | paid | failed, pending -> paid | failed,
                    failed -> pending | paid, paid -> refunded | partially_refunded,
                    partially_refunded -> partially_refunded | refunded

Re-applying the current value of either field is a no-op.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_platform.core.errors import ForbiddenException, NotFoundException, ValidationException
from booking_platform.models.booking import Booking, BookingStatus, PaymentStatus
from booking_platform.models.user import ADMIN_ROLE, BUILDER_ROLE, CLIENT_ROLE, User
from booking_platform.scheduling.availability import (
    get_bookable_session_type,
    get_zone,
    is_interval_available,
    to_utc_naive,
    utcnow,
)

logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_MESSAGE = 'The selected time slot is not available.'

STATUS_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CANCELLED.value: set(),
    BookingStatus.COMPLETED.value: set(),
}

CLIENT_STATUS_TARGETS = {BookingStatus.CANCELLED.value}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PaymentStatus.UNPAID.value: {PaymentStatus.PENDING.value, PaymentStatus.PAID.value, PaymentStatus.FAILED.value},
    PaymentStatus.PENDING.value: {PaymentStatus.PAID.value, PaymentStatus.FAILED.value},
    PaymentStatus.FAILED.value: {PaymentStatus.PENDING.value, PaymentStatus.PAID.value},
    PaymentStatus.PAID.value: {PaymentStatus.REFUNDED.value, PaymentStatus.PARTIALLY_REFUNDED.value},
    PaymentStatus.PARTIALLY_REFUNDED.value: {
        PaymentStatus.PARTIALLY_REFUNDED.value,
        PaymentStatus.REFUNDED.value,
    },
    PaymentStatus.REFUNDED.value: set(),
}


def _lock_builder(db: Session, builder_id: str) -> User:
    # Row lock serializes concurrent bookings for one builder on Postgres.
    builder = (
        db.query(User)
        .filter(User.id == builder_id, User.role == BUILDER_ROLE)
        .with_for_update()
        .first()
    )
    if builder is None:
        raise NotFoundException('Builder not found.', detail={'builderId': builder_id})
    return builder


def load_booking(db: Session, booking_id: str) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if booking is None:
        raise NotFoundException('Booking not found.', detail={'bookingId': booking_id})
    return booking


def is_participant(booking: Booking, user: User) -> bool:
    return user.id in (booking.client_id, booking.builder_id)


def get_booking(db: Session, booking_id: str, actor: User) -> Booking:
    booking = load_booking(db, booking_id)
    if actor.role != ADMIN_ROLE and not is_participant(booking, actor):
        raise ForbiddenException('Not authorized to view this booking.')
    return booking


def list_bookings_for_user(
    db: Session,
    user: User,
    as_role: str | None = None,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Booking]:
    query = db.query(Booking)
    if as_role == BUILDER_ROLE:
        query = query.filter(Booking.builder_id == user.id)
    elif as_role == CLIENT_ROLE:
        query = query.filter(Booking.client_id == user.id)
    else:
        query = query.filter((Booking.client_id == user.id) | (Booking.builder_id == user.id))

    if status:
        query = query.filter(Booking.status == status)
    if start:
        query = query.filter(Booking.start_time >= to_utc_naive(start))
    if end:
        query = query.filter(Booking.end_time <= to_utc_naive(end))

    return query.order_by(Booking.start_time.asc()).all()


def create_booking(
    db: Session,
    client: User,
    *,
    builder_id: str,
    session_type_id: str,
    start_time: datetime,
    end_time: datetime | None = None,
    client_timezone: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Reserve an interval for ``client`` in ``pending/unpaid``.

    The free-slot check and the insert run in one transaction while the
    builder row is locked; the partial unique index on active bookings
    rejects whatever slips past on databases without row locks.
    """
    builder = _lock_builder(db, builder_id)
    if builder.id == client.id:
        raise ValidationException('Builders cannot book their own sessions.')

    session_type = get_bookable_session_type(db, builder_id, session_type_id)
    client_zone = get_zone(client_timezone or client.timezone)

    start = to_utc_naive(start_time)
    if start.second or start.microsecond:
        raise ValidationException('Start time must be on a whole minute.')
    end = start + timedelta(minutes=session_type.duration_minutes)
    if end_time is not None and to_utc_naive(end_time) != end:
        raise ValidationException(
            f'End time must be {session_type.duration_minutes} minutes after start time.',
        )

    current = to_utc_naive(now) if now else utcnow()
    if start <= current:
        raise ValidationException('Bookings must be scheduled in the future.')

    if not is_interval_available(db, builder, start, end, now=current):
        raise ValidationException(SLOT_UNAVAILABLE_MESSAGE)

    booking = Booking(
        session_type_id=session_type.id,
        builder_id=builder.id,
        client_id=client.id,
        start_time=start,
        end_time=end,
        status=BookingStatus.PENDING.value,
        payment_status=PaymentStatus.UNPAID.value,
        amount=session_type.price,
        currency=session_type.currency,
        client_timezone=client_zone.key,
        builder_timezone=get_zone(builder.timezone).key,
        notes=notes,
    )
    db.add(booking)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(
            'Concurrent booking rejected by active-slot index',
            extra={'builder_id': builder.id, 'start_time': start.isoformat()},
        )
        raise ValidationException(SLOT_UNAVAILABLE_MESSAGE) from exc
    db.refresh(booking)

    logger.info(
        'Booking created',
        extra={'booking_id': booking.id, 'builder_id': builder.id, 'client_id': client.id},
    )
    return booking


def _has_confirmed_overlap(db: Session, booking: Booking) -> bool:
    return db.query(Booking.id).filter(
        Booking.builder_id == booking.builder_id,
        Booking.id != booking.id,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.start_time < booking.end_time,
        Booking.end_time > booking.start_time,
    ).first() is not None


def update_booking_status(db: Session, booking_id: str, new_status: str, actor: User) -> Booking:
    booking = load_booking(db, booking_id)

    is_admin = actor.role == ADMIN_ROLE
    is_builder = actor.id == booking.builder_id
    is_client = actor.id == booking.client_id

    if not (is_admin or is_builder or is_client):
        raise ForbiddenException('Not authorized to update this booking.')
    if is_client and not (is_admin or is_builder) and new_status not in CLIENT_STATUS_TARGETS:
        raise ForbiddenException('Clients may only cancel their bookings.')

    if new_status == booking.status:
        return booking

    if new_status not in STATUS_TRANSITIONS.get(booking.status, set()):
        raise ValidationException(f'Cannot change booking status from {booking.status} to {new_status}.')

    if new_status == BookingStatus.CONFIRMED.value and _has_confirmed_overlap(db, booking):
        raise ValidationException('Booking overlaps another confirmed booking for this builder.')

    previous = booking.status
    booking.status = new_status
    db.commit()
    db.refresh(booking)

    logger.info(
        'Booking status changed',
        extra={'booking_id': booking.id, 'from_status': previous, 'to_status': new_status, 'actor_id': actor.id},
    )
    return booking


def apply_payment_update(
    booking: Booking,
    payment_status: str,
    payment_id: str | None = None,
    failure_reason: str | None = None,
) -> bool:
    """Apply a payment transition in memory; the caller owns the commit.

    Returns False when the booking already has ``payment_status``.
    """
    if payment_status == booking.payment_status:
        return False

    if payment_status not in PAYMENT_TRANSITIONS.get(booking.payment_status, set()):
        raise ValidationException(
            f'Cannot change payment status from {booking.payment_status} to {payment_status}.'
        )

    booking.payment_status = payment_status
    if payment_id:
        booking.payment_id = payment_id
    if payment_status == PaymentStatus.FAILED.value:
        booking.payment_failure_reason = failure_reason
    elif payment_status == PaymentStatus.PAID.value:
        booking.payment_failure_reason = None
        if booking.status == BookingStatus.PENDING.value:
            booking.status = BookingStatus.CONFIRMED.value
        elif booking.status == BookingStatus.CANCELLED.value:
            logger.warning('Payment received for a cancelled booking', extra={'booking_id': booking.id})
    return True


def update_booking_payment(
    db: Session,
    booking_id: str,
    payment_status: str,
    payment_id: str | None = None,
    failure_reason: str | None = None,
) -> Booking:
    booking = load_booking(db, booking_id)
    changed = apply_payment_update(booking, payment_status, payment_id, failure_reason)
    if changed:
        db.commit()
        db.refresh(booking)
        logger.info(
            'Booking payment updated',
            extra={'booking_id': booking.id, 'payment_status': payment_status, 'status': booking.status},
        )
    return booking
