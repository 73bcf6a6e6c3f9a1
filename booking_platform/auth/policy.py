"""
Route-level role gating.

Which roles may call which endpoint is declared once in ``ROUTE_POLICIES``
and checked by ``RolePolicyMiddleware`` before any handler runs. Handlers
only decide ownership (is this the builder's own rule, the client's own
booking).

Tokens carry ``sub`` and ``roles``; a token without roles is treated as a
plain client.
"""

import logging
import re
from dataclasses import dataclass, field

import jwt
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from booking_platform.auth import jwt_handler
from booking_platform.core.errors import ErrorType, error_response
from booking_platform.models.user import ADMIN_ROLE, BUILDER_ROLE, CLIENT_ROLE

logger = logging.getLogger(__name__)

PUBLIC = 'public'
AUTHENTICATED = 'authenticated'
DEFAULT_ROLES = [CLIENT_ROLE]


@dataclass(frozen=True)
class Principal:
    sub: str
    roles: tuple[str, ...] = field(default_factory=tuple)

    def has_any_role(self, allowed: set[str]) -> bool:
        return not allowed.isdisjoint(self.roles)


@dataclass(frozen=True)
class RoutePolicy:
    pattern: str
    methods: frozenset[str]
    access: str | frozenset[str]

    def matches(self, method: str, path: str) -> bool:
        return method in self.methods and re.fullmatch(self.pattern, path) is not None


def _policy(methods: str, pattern: str, access: str | set[str]) -> RoutePolicy:
    return RoutePolicy(
        pattern=pattern,
        methods=frozenset(methods.split()),
        access=access if isinstance(access, str) else frozenset(access),
    )


_ID = r'[^/]+'
_WRITERS = {BUILDER_ROLE, ADMIN_ROLE}

# First match wins.
ROUTE_POLICIES: list[RoutePolicy] = [
    _policy('GET', r'/', PUBLIC),
    _policy('GET', r'/auth/me', AUTHENTICATED),
    _policy('GET', rf'/api/scheduling/session-types(/{_ID})?', PUBLIC),
    _policy('POST', r'/api/scheduling/session-types', _WRITERS),
    _policy('PATCH DELETE', rf'/api/scheduling/session-types/{_ID}', _WRITERS),
    _policy('GET', r'/api/scheduling/availability-rules', PUBLIC),
    _policy('POST', r'/api/scheduling/availability-rules', _WRITERS),
    _policy('PATCH DELETE', rf'/api/scheduling/availability-rules/{_ID}', _WRITERS),
    _policy('GET', r'/api/scheduling/availability-exceptions', PUBLIC),
    _policy('POST', r'/api/scheduling/availability-exceptions', _WRITERS),
    _policy('DELETE', rf'/api/scheduling/availability-exceptions/{_ID}', _WRITERS),
    _policy('GET', r'/api/scheduling/availability/time-slots', PUBLIC),
    _policy('POST', r'/api/scheduling/bookings', {CLIENT_ROLE}),
    _policy('GET', rf'/api/scheduling/bookings(/{_ID})?', AUTHENTICATED),
    _policy('PATCH', rf'/api/scheduling/bookings/{_ID}/status', {CLIENT_ROLE, BUILDER_ROLE, ADMIN_ROLE}),
    _policy('POST', r'/api/stripe/checkout', {CLIENT_ROLE}),
    _policy('GET', rf'/api/stripe/checkout/{_ID}', {CLIENT_ROLE, ADMIN_ROLE}),
    _policy('POST', r'/api/stripe/refunds', {ADMIN_ROLE}),
    _policy('POST', r'/api/stripe/webhook', PUBLIC),
]

# Paths outside the table under these prefixes still need a valid token.
PROTECTED_PREFIXES = ('/api/', '/auth/')


def find_policy(method: str, path: str) -> RoutePolicy | None:
    for policy in ROUTE_POLICIES:
        if policy.matches(method, path):
            return policy
    return None


def roles_from_payload(payload: dict) -> tuple[str, ...]:
    token_roles = payload.get('roles')
    if isinstance(token_roles, str):
        token_roles = [token_roles]
    if not isinstance(token_roles, list) or not token_roles:
        token_roles = DEFAULT_ROLES
    return tuple(str(role).lower() for role in token_roles)


def principal_from_header(authorization: str | None) -> Principal | None:
    """Decode a bearer header into a ``Principal``.

    Returns None when no bearer token is present; raises ``jwt.InvalidTokenError``
    when one is present but unusable.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None

    payload = jwt_handler.decode_access_token(token.strip())
    subject = payload.get('sub')
    if not subject:
        raise jwt.InvalidTokenError('Token has no subject')
    return Principal(sub=str(subject), roles=roles_from_payload(payload))


def required_access(method: str, path: str) -> str | frozenset[str]:
    policy = find_policy(method, path)
    if policy is not None:
        return policy.access
    if path.startswith(PROTECTED_PREFIXES):
        return AUTHENTICATED
    return PUBLIC


class RolePolicyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.principal = None
        if request.method == 'OPTIONS':
            return await call_next(request)

        access = required_access(request.method, request.url.path)

        try:
            principal = principal_from_header(request.headers.get('Authorization'))
        except jwt.InvalidTokenError:
            if access == PUBLIC:
                return await call_next(request)
            logger.info('Rejected invalid token', extra={'path': request.url.path})
            return error_response(
                status.HTTP_401_UNAUTHORIZED,
                'Invalid or expired token.',
                ErrorType.AUTHENTICATION,
            )

        request.state.principal = principal
        if access == PUBLIC:
            return await call_next(request)

        if principal is None:
            return error_response(
                status.HTTP_401_UNAUTHORIZED,
                'Authentication required.',
                ErrorType.AUTHENTICATION,
            )

        if access != AUTHENTICATED and not principal.has_any_role(set(access)):
            logger.info(
                'Access forbidden for role',
                extra={'path': request.url.path, 'method': request.method, 'roles': list(principal.roles)},
            )
            return error_response(
                status.HTTP_403_FORBIDDEN,
                'Access forbidden for this role.',
                ErrorType.AUTHORIZATION,
                detail={'requiredRoles': sorted(access)},
            )

        return await call_next(request)
