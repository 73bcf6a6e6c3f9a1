from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, Query, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_platform.auth.dependencies import get_current_user
from booking_platform.core.errors import ValidationException
from booking_platform.database import get_db
from booking_platform.models.booking import BookingStatus
from booking_platform.models.user import BUILDER_ROLE, CLIENT_ROLE, User
from booking_platform.routes.common import CamelModel, UtcDatetime, database_unavailable, ensure_database_ready
from booking_platform.scheduling import bookings

router = APIRouter(tags=['bookings'])

MAX_BOOKING_NOTES_LENGTH = 1000
BOOKING_STATUSES = {booking_status.value for booking_status in BookingStatus}


class CreateBookingRequest(CamelModel):
    builder_id: str
    session_type_id: str
    start_time: datetime
    end_time: datetime | None = None
    client_timezone: str | None = None
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_BOOKING_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_BOOKING_NOTES_LENGTH} characters or fewer.')

        return normalized


class UpdateBookingStatusRequest(CamelModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BOOKING_STATUSES:
            raise ValueError('Invalid booking status.')
        return normalized


class BookingResponse(CamelModel):
    id: str
    session_type_id: str
    builder_id: str
    client_id: str
    start_time: UtcDatetime
    end_time: UtcDatetime
    status: str
    payment_status: str
    payment_id: str | None = None
    checkout_session_id: str | None = None
    payment_failure_reason: str | None = None
    amount: float | None = None
    amount_refunded: float | None = None
    currency: str | None = None
    client_timezone: str
    builder_timezone: str
    notes: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        return bookings.create_booking(
            db,
            current_user,
            builder_id=data.builder_id,
            session_type_id=data.session_type_id,
            start_time=data.start_time,
            end_time=data.end_time,
            client_timezone=data.client_timezone,
            notes=data.notes,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[BookingResponse])
def list_bookings(
    role: str | None = Query(default=None),
    booking_status: str | None = Query(default=None, alias='status'),
    start_date: date | None = Query(default=None, alias='startDate'),
    end_date: date | None = Query(default=None, alias='endDate'),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    if role is not None and role not in (CLIENT_ROLE, BUILDER_ROLE):
        raise ValidationException('role must be "client" or "builder".')
    if booking_status is not None and booking_status not in BOOKING_STATUSES:
        raise ValidationException('Invalid booking status.')

    try:
        return bookings.list_bookings_for_user(
            db,
            current_user,
            as_role=role,
            status=booking_status,
            start=datetime.combine(start_date, time.min) if start_date else None,
            end=datetime.combine(end_date + timedelta(days=1), time.min) if end_date else None,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{booking_id}', response_model=BookingResponse)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        return bookings.get_booking(db, booking_id, current_user)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{booking_id}/status', response_model=BookingResponse)
def update_booking_status(
    booking_id: str,
    data: UpdateBookingStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        return bookings.update_booking_status(db, booking_id, data.status, current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
