from fastapi import Depends, Request
from sqlalchemy.orm import Session

from booking_platform.auth.policy import Principal
from booking_platform.core.errors import UnauthorizedException
from booking_platform.database import get_db
from booking_platform.models.user import User


def get_principal(request: Request) -> Principal:
    principal = getattr(request.state, 'principal', None)
    if principal is None:
        raise UnauthorizedException('Authentication required.')
    return principal


def get_current_user(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.id == principal.sub).first()
    if user is None:
        user = db.query(User).filter(User.email == principal.sub.lower()).first()
    if user is None:
        raise UnauthorizedException('User not found.')
    return user
