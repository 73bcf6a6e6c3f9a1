from fastapi import APIRouter, Depends

from booking_platform.auth.dependencies import get_current_user, get_principal
from booking_platform.auth.policy import Principal
from booking_platform.models.user import User
from booking_platform.routes.common import CamelModel

router = APIRouter(tags=['auth'])


class CurrentUserResponse(CamelModel):
    id: str
    email: str
    name: str | None = None
    role: str
    timezone: str
    roles: list[str]


@router.get('/me', response_model=CurrentUserResponse)
def get_me(
    current_user: User = Depends(get_current_user),
    principal: Principal = Depends(get_principal),
):
    return CurrentUserResponse(
        id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        timezone=current_user.timezone,
        roles=list(principal.roles),
    )
