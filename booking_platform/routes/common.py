from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_platform.core.errors import (
    DATABASE_UNAVAILABLE_MESSAGE,
    ForbiddenException,
    ServiceUnavailableException,
    ValidationException,
)
from booking_platform.database import ensure_booking_schema
from booking_platform.models.user import User
from booking_platform.scheduling.availability import as_utc, get_builder

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    """Request/response model exchanged with the web client in camelCase."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def database_unavailable() -> ServiceUnavailableException:
    return ServiceUnavailableException(DATABASE_UNAVAILABLE_MESSAGE)


def resolve_target_builder(db: Session, user: User, requested_builder_id: str | None) -> User:
    """The builder a write applies to: builders act on themselves, admins name one."""
    if user.is_admin:
        if not requested_builder_id:
            raise ValidationException('builderId is required.')
        return get_builder(db, requested_builder_id)

    if not user.is_builder:
        raise ForbiddenException('Only builders can manage scheduling settings.')
    if requested_builder_id and requested_builder_id != user.id:
        raise ForbiddenException('Builders can only manage their own scheduling settings.')
    return user


def ensure_owner(user: User, builder_id: str) -> None:
    if not user.is_admin and user.id != builder_id:
        raise ForbiddenException('Builders can only manage their own scheduling settings.')
