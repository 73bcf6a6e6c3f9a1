import logging
from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_platform.auth.dependencies import get_current_user
from booking_platform.core.errors import NotFoundException, ValidationException
from booking_platform.database import get_db
from booking_platform.models.availability import AvailabilityException, AvailabilityRule
from booking_platform.models.user import User
from booking_platform.routes.common import (
    CamelModel,
    UtcDatetime,
    database_unavailable,
    ensure_database_ready,
    ensure_owner,
    resolve_target_builder,
)
from booking_platform.scheduling.availability import (
    get_available_time_slots,
    get_builder,
    overlaps,
    parse_clock,
    to_utc_naive,
)

router = APIRouter(tags=['availability'])

logger = logging.getLogger(__name__)

GRANULARITY_WINDOWS = 'windows'
GRANULARITY_STARTS = 'starts'
MAX_EXCEPTION_TITLE_LENGTH = 200


def _normalize_clock(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        hours, minutes = value.strip().split(':')
        return time(int(hours), int(minutes)).strftime('%H:%M')
    except ValueError as exc:
        raise ValueError('Time must be in 24-hour format (HH:MM).') from exc


class CreateAvailabilityRuleRequest(CamelModel):
    day_of_week: int
    start_time: str
    end_time: str
    is_available: bool = True
    effective_date: date | None = None
    expiration_date: date | None = None
    builder_id: str | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if value < 0 or value > 6:
            raise ValueError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_clock(cls, value: str) -> str:
        return _normalize_clock(value)


class UpdateAvailabilityRuleRequest(CamelModel):
    day_of_week: int | None = None
    start_time: str | None = None
    end_time: str | None = None
    is_available: bool | None = None
    effective_date: date | None = None
    expiration_date: date | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int | None) -> int | None:
        if value is not None and (value < 0 or value > 6):
            raise ValueError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_clock(cls, value: str | None) -> str | None:
        return _normalize_clock(value)


class AvailabilityRuleResponse(CamelModel):
    id: str
    builder_id: str
    day_of_week: int
    start_time: str
    end_time: str
    is_available: bool
    effective_date: date | None = None
    expiration_date: date | None = None


class CreateAvailabilityExceptionRequest(CamelModel):
    start_datetime: datetime
    end_datetime: datetime
    is_available: bool = False
    title: str | None = None
    builder_id: str | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if len(normalized) > MAX_EXCEPTION_TITLE_LENGTH:
            raise ValueError(f'Title must be {MAX_EXCEPTION_TITLE_LENGTH} characters or fewer.')
        return normalized or None


class AvailabilityExceptionResponse(CamelModel):
    id: str
    builder_id: str
    start_datetime: UtcDatetime
    end_datetime: UtcDatetime
    is_available: bool
    title: str | None = None


class TimeSlotResponse(CamelModel):
    start_time: UtcDatetime
    end_time: UtcDatetime
    builder_id: str
    is_booked: bool
    session_type_id: str | None = None
    duration_minutes: int
    local_start_time: datetime | None = None
    local_end_time: datetime | None = None


def validate_rule_window(
    start_time: str,
    end_time: str,
    effective_date: date | None,
    expiration_date: date | None,
) -> None:
    if parse_clock(end_time) <= parse_clock(start_time):
        raise ValidationException('End time must be after start time.')
    if effective_date and expiration_date and expiration_date < effective_date:
        raise ValidationException('Expiration date must be on or after effective date.')


def _date_ranges_intersect(a: AvailabilityRule, b: AvailabilityRule) -> bool:
    a_start, a_end = a.effective_date or date.min, a.expiration_date or date.max
    b_start, b_end = b.effective_date or date.min, b.expiration_date or date.max
    return a_start <= b_end and b_start <= a_end


def ensure_no_rule_overlap(db: Session, rule: AvailabilityRule) -> None:
    if not rule.is_available:
        return

    siblings = db.query(AvailabilityRule).filter(
        AvailabilityRule.builder_id == rule.builder_id,
        AvailabilityRule.day_of_week == rule.day_of_week,
        AvailabilityRule.is_available.is_(True),
    ).all()

    anchor = date(2000, 1, 1)
    rule_start = datetime.combine(anchor, parse_clock(rule.start_time))
    rule_end = datetime.combine(anchor, parse_clock(rule.end_time))
    for sibling in siblings:
        if sibling.id == rule.id or not _date_ranges_intersect(rule, sibling):
            continue
        sibling_start = datetime.combine(anchor, parse_clock(sibling.start_time))
        sibling_end = datetime.combine(anchor, parse_clock(sibling.end_time))
        if overlaps(rule_start, rule_end, sibling_start, sibling_end):
            raise ValidationException(
                'Availability rule overlaps an existing rule for the same day.',
                detail={'ruleId': sibling.id},
            )


def load_rule(db: Session, rule_id: str) -> AvailabilityRule:
    rule = db.query(AvailabilityRule).filter(AvailabilityRule.id == rule_id).first()
    if rule is None:
        raise NotFoundException('Availability rule not found.', detail={'ruleId': rule_id})
    return rule


@router.get('/availability-rules', response_model=list[AvailabilityRuleResponse])
def list_availability_rules(
    builder_id: str = Query(alias='builderId'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        get_builder(db, builder_id)
        return db.query(AvailabilityRule).filter(
            AvailabilityRule.builder_id == builder_id,
        ).order_by(AvailabilityRule.day_of_week.asc(), AvailabilityRule.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/availability-rules', response_model=AvailabilityRuleResponse, status_code=status.HTTP_201_CREATED)
def create_availability_rule(
    data: CreateAvailabilityRuleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        builder = resolve_target_builder(db, current_user, data.builder_id)
        validate_rule_window(data.start_time, data.end_time, data.effective_date, data.expiration_date)

        rule = AvailabilityRule(
            builder_id=builder.id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            is_available=data.is_available,
            effective_date=data.effective_date,
            expiration_date=data.expiration_date,
        )
        ensure_no_rule_overlap(db, rule)

        db.add(rule)
        db.commit()
        db.refresh(rule)
        logger.info('Availability rule created', extra={'rule_id': rule.id, 'builder_id': builder.id})
        return rule
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/availability-rules/{rule_id}', response_model=AvailabilityRuleResponse)
def update_availability_rule(
    rule_id: str,
    data: UpdateAvailabilityRuleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        rule = load_rule(db, rule_id)
        ensure_owner(current_user, rule.builder_id)

        changes = data.model_dump(exclude_unset=True)
        for field_name in ('day_of_week', 'start_time', 'end_time', 'is_available'):
            if changes.get(field_name) is not None:
                setattr(rule, field_name, changes[field_name])
        for field_name in ('effective_date', 'expiration_date'):
            if field_name in changes:
                setattr(rule, field_name, changes[field_name])

        validate_rule_window(rule.start_time, rule.end_time, rule.effective_date, rule.expiration_date)
        ensure_no_rule_overlap(db, rule)

        rule.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(rule)
        return rule
    except ValidationException:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/availability-rules/{rule_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        rule = load_rule(db, rule_id)
        ensure_owner(current_user, rule.builder_id)
        db.delete(rule)
        db.commit()
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/availability-exceptions', response_model=list[AvailabilityExceptionResponse])
def list_availability_exceptions(
    builder_id: str = Query(alias='builderId'),
    start_date: date | None = Query(default=None, alias='startDate'),
    end_date: date | None = Query(default=None, alias='endDate'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        get_builder(db, builder_id)
        query = db.query(AvailabilityException).filter(AvailabilityException.builder_id == builder_id)
        if start_date:
            query = query.filter(AvailabilityException.end_datetime > datetime.combine(start_date, datetime.min.time()))
        if end_date:
            range_end = datetime.combine(end_date + timedelta(days=1), datetime.min.time())
            query = query.filter(AvailabilityException.start_datetime < range_end)
        return query.order_by(AvailabilityException.start_datetime.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post(
    '/availability-exceptions',
    response_model=AvailabilityExceptionResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_availability_exception(
    data: CreateAvailabilityExceptionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        builder = resolve_target_builder(db, current_user, data.builder_id)
        start = to_utc_naive(data.start_datetime)
        end = to_utc_naive(data.end_datetime)
        if end <= start:
            raise ValidationException('End time must be after start time.')

        exception = AvailabilityException(
            builder_id=builder.id,
            start_datetime=start,
            end_datetime=end,
            is_available=data.is_available,
            title=data.title,
        )
        db.add(exception)
        db.commit()
        db.refresh(exception)
        logger.info(
            'Availability exception created',
            extra={'exception_id': exception.id, 'builder_id': builder.id, 'is_available': exception.is_available},
        )
        return exception
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/availability-exceptions/{exception_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_exception(
    exception_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()
    try:
        exception = db.query(AvailabilityException).filter(AvailabilityException.id == exception_id).first()
        if exception is None:
            raise NotFoundException('Availability exception not found.', detail={'exceptionId': exception_id})
        ensure_owner(current_user, exception.builder_id)
        db.delete(exception)
        db.commit()
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/availability/time-slots', response_model=list[TimeSlotResponse])
def list_time_slots(
    builder_id: str = Query(alias='builderId'),
    start_date: date = Query(alias='startDate'),
    end_date: date = Query(alias='endDate'),
    session_type_id: str | None = Query(default=None, alias='sessionTypeId'),
    client_timezone: str | None = Query(default=None, alias='clientTimezone'),
    granularity: str = Query(default=GRANULARITY_WINDOWS),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    if granularity not in (GRANULARITY_WINDOWS, GRANULARITY_STARTS):
        raise ValidationException(f'granularity must be "{GRANULARITY_WINDOWS}" or "{GRANULARITY_STARTS}".')

    try:
        slots = get_available_time_slots(
            db,
            builder_id,
            start_date,
            end_date,
            session_type_id=session_type_id,
            client_timezone=client_timezone,
            split_into_starts=granularity == GRANULARITY_STARTS,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return [
        TimeSlotResponse(
            start_time=slot.start_time,
            end_time=slot.end_time,
            builder_id=slot.builder_id,
            is_booked=slot.is_booked,
            session_type_id=slot.session_type_id,
            duration_minutes=slot.duration_minutes,
            local_start_time=slot.local_start_time,
            local_end_time=slot.local_end_time,
        )
        for slot in slots
    ]
