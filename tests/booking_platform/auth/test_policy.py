import os

import jwt
import pytest

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

from booking_platform.auth import jwt_handler  # noqa: E402
from booking_platform.auth.policy import (  # noqa: E402
    AUTHENTICATED,
    PUBLIC,
    find_policy,
    principal_from_header,
    required_access,
    roles_from_payload,
)


@pytest.mark.parametrize(
    ('method', 'path', 'expected'),
    [
        ('GET', '/', PUBLIC),
        ('GET', '/api/scheduling/availability/time-slots', PUBLIC),
        ('GET', '/api/scheduling/session-types/abc', PUBLIC),
        ('POST', '/api/stripe/webhook', PUBLIC),
        ('GET', '/auth/me', AUTHENTICATED),
        ('GET', '/api/scheduling/bookings/abc', AUTHENTICATED),
        ('GET', '/api/unknown', AUTHENTICATED),
        ('GET', '/docs', PUBLIC),
    ],
)
def test_required_access_for_open_and_authenticated_routes(method: str, path: str, expected: str) -> None:
    assert required_access(method, path) == expected


@pytest.mark.parametrize(
    ('method', 'path', 'roles'),
    [
        ('POST', '/api/scheduling/bookings', {'client'}),
        ('POST', '/api/scheduling/availability-rules', {'builder', 'admin'}),
        ('DELETE', '/api/scheduling/availability-exceptions/abc', {'builder', 'admin'}),
        ('PATCH', '/api/scheduling/bookings/abc/status', {'client', 'builder', 'admin'}),
        ('POST', '/api/stripe/refunds', {'admin'}),
    ],
)
def test_required_access_lists_roles(method: str, path: str, roles: set[str]) -> None:
    assert set(required_access(method, path)) == roles


def test_find_policy_distinguishes_methods() -> None:
    assert find_policy('GET', '/api/scheduling/availability-rules').access == PUBLIC
    assert find_policy('PUT', '/api/scheduling/availability-rules') is None


def test_roles_default_to_client_when_missing() -> None:
    assert roles_from_payload({'sub': 'user-1'}) == ('client',)
    assert roles_from_payload({'sub': 'user-1', 'roles': []}) == ('client',)
    assert roles_from_payload({'sub': 'user-1', 'roles': ['BUILDER']}) == ('builder',)
    assert roles_from_payload({'sub': 'user-1', 'roles': 'admin'}) == ('admin',)


def test_principal_from_header_decodes_bearer_token() -> None:
    token = jwt_handler.create_access_token('user-1', roles=['builder'])

    principal = principal_from_header(f'Bearer {token}')

    assert principal.sub == 'user-1'
    assert principal.roles == ('builder',)


def test_principal_from_header_ignores_missing_or_other_schemes() -> None:
    assert principal_from_header(None) is None
    assert principal_from_header('Basic dXNlcjpwYXNz') is None


def test_principal_from_header_rejects_tampered_token() -> None:
    token = jwt.encode({'sub': 'user-1'}, 'another-secret', algorithm='HS256')

    with pytest.raises(jwt.InvalidTokenError):
        principal_from_header(f'Bearer {token}')


def test_principal_from_header_rejects_expired_token() -> None:
    token = jwt_handler.create_access_token('user-1', expires_minutes=-1)

    with pytest.raises(jwt.ExpiredSignatureError):
        principal_from_header(f'Bearer {token}')
