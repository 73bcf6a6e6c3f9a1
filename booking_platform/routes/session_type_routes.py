import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_platform.auth.dependencies import get_current_user
from booking_platform.core import config
from booking_platform.core.errors import NotFoundException, ValidationException
from booking_platform.database import get_db
from booking_platform.models.booking import Booking
from booking_platform.models.session_type import SessionType
from booking_platform.models.user import User
from booking_platform.routes.common import (
    CamelModel,
    UtcDatetime,
    database_unavailable,
    ensure_database_ready,
    ensure_owner,
    resolve_target_builder,
)

router = APIRouter(tags=['session-types'])

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
MAX_TITLE_LENGTH = 120


def _clean_title(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        raise ValueError('Title is required.')
    if len(normalized) > MAX_TITLE_LENGTH:
        raise ValueError(f'Title must be {MAX_TITLE_LENGTH} characters or fewer.')
    return normalized


def _check_duration(value: int | None) -> int | None:
    if value is None:
        return None
    if value < MIN_DURATION_MINUTES or value > MAX_DURATION_MINUTES:
        raise ValueError(f'Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes.')
    if value % 5 != 0:
        raise ValueError('Duration must be a multiple of 5 minutes.')
    return value


def _check_price(value: Decimal | None) -> Decimal | None:
    if value is not None and value < 0:
        raise ValueError('Price cannot be negative.')
    return value


class CreateSessionTypeRequest(CamelModel):
    title: str
    description: str = ''
    duration_minutes: int
    price: Decimal
    currency: str = config.DEFAULT_CURRENCY
    is_active: bool = True
    max_participants: int | None = None
    display_order: int = 999
    builder_id: str | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value):
        return _clean_title(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value):
        return _check_duration(value)

    @field_validator('price')
    @classmethod
    def validate_price(cls, value):
        return _check_price(value)

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if len(normalized) != 3:
            raise ValueError('Currency must be a three-letter ISO code.')
        return normalized


class UpdateSessionTypeRequest(CamelModel):
    title: str | None = None
    description: str | None = None
    duration_minutes: int | None = None
    price: Decimal | None = None
    is_active: bool | None = None
    max_participants: int | None = None
    display_order: int | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value):
        return _clean_title(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value):
        return _check_duration(value)

    @field_validator('price')
    @classmethod
    def validate_price(cls, value):
        return _check_price(value)


class SessionTypeResponse(CamelModel):
    id: str
    builder_id: str
    title: str
    description: str
    duration_minutes: int
    price: float
    currency: str
    is_active: bool
    max_participants: int | None = None
    display_order: int
    created_at: UtcDatetime | None = None


def has_bookings(db: Session, session_type: SessionType) -> bool:
    return db.query(Booking.id).filter(Booking.session_type_id == session_type.id).first() is not None


def load_session_type(db: Session, session_type_id: str) -> SessionType:
    session_type = db.query(SessionType).filter(SessionType.id == session_type_id).first()
    if session_type is None:
        raise NotFoundException('Session type not found.', detail={'sessionTypeId': session_type_id})
    return session_type


@router.get('', response_model=list[SessionTypeResponse])
def list_session_types(
    builder_id: str | None = Query(default=None, alias='builderId'),
    include_inactive: bool = Query(default=False, alias='includeInactive'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        query = db.query(SessionType)
        if builder_id:
            query = query.filter(SessionType.builder_id == builder_id)
        if not include_inactive:
            query = query.filter(SessionType.is_active.is_(True))
        return query.order_by(SessionType.display_order.asc(), SessionType.title.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{session_type_id}', response_model=SessionTypeResponse)
def get_session_type(session_type_id: str, db: Session = Depends(get_db)):
    ensure_database_ready()
    try:
        return load_session_type(db, session_type_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=SessionTypeResponse, status_code=status.HTTP_201_CREATED)
def create_session_type(
    data: CreateSessionTypeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        builder = resolve_target_builder(db, current_user, data.builder_id)
        session_type = SessionType(
            builder_id=builder.id,
            title=data.title,
            description=data.description.strip(),
            duration_minutes=data.duration_minutes,
            price=data.price,
            currency=data.currency,
            is_active=data.is_active,
            max_participants=data.max_participants,
            display_order=data.display_order,
        )
        db.add(session_type)
        db.commit()
        db.refresh(session_type)
        logger.info('Session type created', extra={'session_type_id': session_type.id, 'builder_id': builder.id})
        return session_type
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/{session_type_id}', response_model=SessionTypeResponse)
def update_session_type(
    session_type_id: str,
    data: UpdateSessionTypeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        session_type = load_session_type(db, session_type_id)
        ensure_owner(current_user, session_type.builder_id)

        changes = data.model_dump(exclude_unset=True)
        new_duration = changes.get('duration_minutes')
        duration_changed = new_duration is not None and new_duration != session_type.duration_minutes
        if duration_changed and has_bookings(db, session_type):
            raise ValidationException(
                'Duration cannot change once the session type has bookings. Create a new session type instead.',
                detail={'sessionTypeId': session_type.id},
            )

        for field_name, value in changes.items():
            if field_name == 'description' and value is not None:
                value = value.strip()
            if value is None and field_name not in ('max_participants',):
                continue
            setattr(session_type, field_name, value)
        session_type.updated_at = datetime.utcnow()

        db.commit()
        db.refresh(session_type)
        return session_type
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{session_type_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_session_type(
    session_type_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        session_type = load_session_type(db, session_type_id)
        ensure_owner(current_user, session_type.builder_id)

        booked = has_bookings(db, session_type)
        if booked:
            # Booked session types stay for history and are only retired.
            session_type.is_active = False
        else:
            db.delete(session_type)
        db.commit()
        logger.info(
            'Session type removed',
            extra={'session_type_id': session_type_id, 'deactivated_only': booked},
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
