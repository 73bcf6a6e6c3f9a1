"""
Availability resolution.

Open time for a builder is computed on demand, never stored:

    weekly rules (builder local time) + available exceptions
    - unavailable exceptions
    - pending/confirmed bookings
    - everything before "now"

Intervals are handled as naive UTC datetimes, the same representation the
database columns use. Conversion to aware datetimes happens only when a
``TimeSlot`` is built for a caller.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from booking_platform.core import config
from booking_platform.core.errors import NotFoundException, ValidationException
from booking_platform.models.availability import AvailabilityException, AvailabilityRule
from booking_platform.models.booking import BLOCKING_STATUSES, Booking
from booking_platform.models.session_type import SessionType
from booking_platform.models.user import BUILDER_ROLE, User

logger = logging.getLogger(__name__)

Interval = tuple[datetime, datetime]


@dataclass
class TimeSlot:
    start_time: datetime
    end_time: datetime
    builder_id: str
    is_booked: bool = False
    session_type_id: str | None = None
    local_start_time: datetime | None = None
    local_end_time: datetime | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or config.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationException(f'Unknown timezone: {name}') from exc


def to_utc_naive(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC; naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_clock(value: str) -> time:
    try:
        hours, minutes = value.split(':')
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as exc:
        raise ValidationException('Time must be in 24-hour format (HH:MM).') from exc


def rule_day_of_week(day: date) -> int:
    """Day index used by availability rules: 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def iterate_days(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    merged: list[Interval] = []
    for start, end in sorted(interval for interval in intervals if interval[1] > interval[0]):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(base: Iterable[Interval], removals: Iterable[Interval]) -> list[Interval]:
    remaining = merge_intervals(base)
    for cut_start, cut_end in merge_intervals(removals):
        next_remaining: list[Interval] = []
        for start, end in remaining:
            if not overlaps(start, end, cut_start, cut_end):
                next_remaining.append((start, end))
                continue
            if start < cut_start:
                next_remaining.append((start, cut_start))
            if cut_end < end:
                next_remaining.append((cut_end, end))
        remaining = next_remaining
    return remaining


def rule_applies_on(rule: AvailabilityRule, day: date) -> bool:
    if not rule.is_available:
        return False
    if rule.day_of_week != rule_day_of_week(day):
        return False
    if rule.effective_date and day < rule.effective_date:
        return False
    if rule.expiration_date and day > rule.expiration_date:
        return False
    return True


def expand_rules(
    rules: Sequence[AvailabilityRule],
    start_date: date,
    end_date: date,
    zone: ZoneInfo,
) -> list[Interval]:
    """Turn weekly rules into concrete UTC intervals for each local day in range."""
    intervals: list[Interval] = []
    for day in iterate_days(start_date, end_date):
        for rule in rules:
            if not rule_applies_on(rule, day):
                continue
            local_start = datetime.combine(day, parse_clock(rule.start_time), tzinfo=zone)
            local_end = datetime.combine(day, parse_clock(rule.end_time), tzinfo=zone)
            intervals.append((to_utc_naive(local_start), to_utc_naive(local_end)))
    return intervals


def local_day_bounds(start_date: date, end_date: date, zone: ZoneInfo) -> Interval:
    range_start = datetime.combine(start_date, time.min, tzinfo=zone)
    range_end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=zone)
    return to_utc_naive(range_start), to_utc_naive(range_end)


def ceil_to_minute(value: datetime) -> datetime:
    if value.second or value.microsecond:
        return value.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return value


def compute_open_windows(
    rules: Sequence[AvailabilityRule],
    exceptions: Sequence[AvailabilityException],
    busy: Iterable[Interval],
    start_date: date,
    end_date: date,
    zone: ZoneInfo,
    now: datetime,
    min_duration_minutes: int | None = None,
) -> list[Interval]:
    range_start, range_end = local_day_bounds(start_date, end_date, zone)

    opened = expand_rules(rules, start_date, end_date, zone)
    opened.extend(
        (max(exc.start_datetime, range_start), min(exc.end_datetime, range_end))
        for exc in exceptions
        if exc.is_available
    )
    blocked = [(exc.start_datetime, exc.end_datetime) for exc in exceptions if not exc.is_available]
    blocked.extend(busy)

    # Past time is clamped away rather than rejected.
    blocked.append((range_start, max(range_start, ceil_to_minute(now))))

    windows = subtract_intervals(opened, blocked)
    if min_duration_minutes:
        minimum = timedelta(minutes=min_duration_minutes)
        windows = [(start, end) for start, end in windows if end - start >= minimum]
    return windows


def enumerate_slot_starts(
    windows: Iterable[Interval],
    duration_minutes: int,
    increment_minutes: int | None = None,
) -> list[Interval]:
    """Split free windows into fixed-length candidate slots on increment boundaries."""
    increment = timedelta(minutes=increment_minutes or config.SLOT_INCREMENT_MINUTES)
    duration = timedelta(minutes=duration_minutes)
    step_minutes = int(increment.total_seconds() // 60)
    slots: list[Interval] = []

    for window_start, window_end in windows:
        current = window_start.replace(second=0, microsecond=0)
        if current < window_start:
            current += timedelta(minutes=1)
        # Starts fall on multiples of the increment counted from midnight.
        offset = (current.hour * 60 + current.minute) % step_minutes
        if offset:
            current += timedelta(minutes=step_minutes - offset)

        while current + duration <= window_end:
            slots.append((current, current + duration))
            current += increment

    return slots


def get_builder(db: Session, builder_id: str) -> User:
    builder = db.query(User).filter(User.id == builder_id, User.role == BUILDER_ROLE).first()
    if builder is None:
        raise NotFoundException('Builder not found.', detail={'builderId': builder_id})
    return builder


def get_bookable_session_type(db: Session, builder_id: str, session_type_id: str) -> SessionType:
    session_type = db.query(SessionType).filter(SessionType.id == session_type_id).first()
    if session_type is None or session_type.builder_id != builder_id:
        raise ValidationException('Session type does not exist for this builder.')
    if not session_type.is_active:
        raise ValidationException('Session type is not currently bookable.')
    return session_type


def validate_date_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValidationException('End date must be on or after start date.')
    if (end_date - start_date).days > config.MAX_SLOT_RANGE_DAYS:
        raise ValidationException(f'Date range cannot exceed {config.MAX_SLOT_RANGE_DAYS} days.')


def load_busy_intervals(
    db: Session,
    builder_id: str,
    range_start: datetime,
    range_end: datetime,
    exclude_booking_id: str | None = None,
) -> list[Interval]:
    query = db.query(Booking.start_time, Booking.end_time).filter(
        Booking.builder_id == builder_id,
        Booking.status.in_(BLOCKING_STATUSES),
        Booking.start_time < range_end,
        Booking.end_time > range_start,
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)
    return [(start, end) for start, end in query.all()]


def resolve_open_windows(
    db: Session,
    builder: User,
    start_date: date,
    end_date: date,
    min_duration_minutes: int | None = None,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
) -> list[Interval]:
    zone = get_zone(builder.timezone)
    range_start, range_end = local_day_bounds(start_date, end_date, zone)

    rules = db.query(AvailabilityRule).filter(AvailabilityRule.builder_id == builder.id).all()
    exceptions = db.query(AvailabilityException).filter(
        AvailabilityException.builder_id == builder.id,
        AvailabilityException.start_datetime < range_end,
        AvailabilityException.end_datetime > range_start,
    ).all()
    busy = load_busy_intervals(db, builder.id, range_start, range_end, exclude_booking_id)

    return compute_open_windows(
        rules,
        exceptions,
        busy,
        start_date,
        end_date,
        zone,
        now=to_utc_naive(now) if now else utcnow(),
        min_duration_minutes=min_duration_minutes,
    )


def build_time_slot(
    interval: Interval,
    builder_id: str,
    session_type_id: str | None,
    client_zone: ZoneInfo | None,
) -> TimeSlot:
    start, end = as_utc(interval[0]), as_utc(interval[1])
    return TimeSlot(
        start_time=start,
        end_time=end,
        builder_id=builder_id,
        is_booked=False,
        session_type_id=session_type_id,
        local_start_time=start.astimezone(client_zone) if client_zone else None,
        local_end_time=end.astimezone(client_zone) if client_zone else None,
    )


def get_available_time_slots(
    db: Session,
    builder_id: str,
    start_date: date,
    end_date: date,
    session_type_id: str | None = None,
    client_timezone: str | None = None,
    now: datetime | None = None,
    split_into_starts: bool = False,
) -> list[TimeSlot]:
    """Open slots for a builder between two local calendar dates, inclusive.

    Without ``split_into_starts`` each slot is a maximal free window; with it,
    each slot is one bookable start of the session type's duration.
    """
    validate_date_range(start_date, end_date)
    builder = get_builder(db, builder_id)

    duration_minutes = None
    if session_type_id:
        duration_minutes = get_bookable_session_type(db, builder_id, session_type_id).duration_minutes
    elif split_into_starts:
        raise ValidationException('sessionTypeId is required to list individual start times.')

    client_zone = get_zone(client_timezone) if client_timezone else None

    windows = resolve_open_windows(db, builder, start_date, end_date, duration_minutes, now)
    if split_into_starts:
        windows = enumerate_slot_starts(windows, duration_minutes)

    logger.debug(
        'Resolved availability',
        extra={'builder_id': builder_id, 'slot_count': len(windows), 'session_type_id': session_type_id},
    )
    return [build_time_slot(window, builder_id, session_type_id, client_zone) for window in windows]


def is_interval_available(
    db: Session,
    builder: User,
    start_time: datetime,
    end_time: datetime,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
) -> bool:
    """True when ``[start_time, end_time)`` lies inside one open window."""
    start_time, end_time = to_utc_naive(start_time), to_utc_naive(end_time)
    zone = get_zone(builder.timezone)
    local_start = as_utc(start_time).astimezone(zone).date()
    local_end = as_utc(end_time).astimezone(zone).date()

    windows = resolve_open_windows(
        db,
        builder,
        local_start - timedelta(days=1),
        local_end + timedelta(days=1),
        now=now,
        exclude_booking_id=exclude_booking_id,
    )
    return any(window_start <= start_time and end_time <= window_end for window_start, window_end in windows)
