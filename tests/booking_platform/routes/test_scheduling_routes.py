import pytest

from booking_platform.models.availability import AvailabilityRule
from booking_platform.models.booking import Booking, BookingStatus
from booking_platform.models.user import BUILDER_ROLE, CLIENT_ROLE
from tests.booking_platform.factories import auth_headers, make_booking, make_rule, make_user, MONDAY

SLOTS_URL = '/api/scheduling/availability/time-slots'
RULES_URL = '/api/scheduling/availability-rules'
BOOKINGS_URL = '/api/scheduling/bookings'


def slot_params(builder, **extra) -> dict:
    return {'builderId': builder.id, 'startDate': '2030-01-07', 'endDate': '2030-01-07', **extra}


def test_root_reports_status(api_client) -> None:
    response = api_client.get('/')

    assert response.status_code == 200
    assert response.json() == {'status': 'Booking API Running'}
    assert response.headers['X-Request-Id']


def test_auth_me_returns_current_user(api_client, client_user) -> None:
    response = api_client.get('/auth/me', headers=auth_headers(client_user))

    assert response.status_code == 200
    body = response.json()
    assert body['email'] == 'client@example.com'
    assert body['roles'] == ['client']


def test_auth_me_without_token_is_authentication_error(api_client) -> None:
    response = api_client.get('/auth/me')

    assert response.status_code == 401
    assert response.json()['success'] is False
    assert response.json()['error']['type'] == 'AUTHENTICATION_ERROR'


def test_invalid_token_is_rejected_on_protected_route(api_client) -> None:
    response = api_client.get(BOOKINGS_URL, headers={'Authorization': 'Bearer not-a-token'})

    assert response.status_code == 401
    assert response.json()['message'] == 'Invalid or expired token.'


def test_builder_creates_rule_and_time_slots_reflect_it(api_client, builder) -> None:
    created = api_client.post(
        RULES_URL,
        json={'dayOfWeek': 1, 'startTime': '9:00', 'endTime': '17:00'},
        headers=auth_headers(builder),
    )

    assert created.status_code == 201
    assert created.json()['startTime'] == '09:00'
    assert created.json()['builderId'] == builder.id

    response = api_client.get(SLOTS_URL, params=slot_params(builder))

    assert response.status_code == 200
    slots = response.json()
    assert len(slots) == 1
    assert slots[0]['startTime'].startswith('2030-01-07T09:00:00')
    assert slots[0]['endTime'].startswith('2030-01-07T17:00:00')
    assert slots[0]['durationMinutes'] == 480
    assert slots[0]['isBooked'] is False


def test_time_slots_can_list_individual_starts(api_client, db, builder, session_type) -> None:
    make_rule(db, builder, day_of_week=1, start_time='09:00', end_time='10:30')

    response = api_client.get(
        SLOTS_URL,
        params=slot_params(builder, sessionTypeId=session_type.id, granularity='starts'),
    )

    assert response.status_code == 200
    assert [slot['startTime'][11:16] for slot in response.json()] == ['09:00', '09:15', '09:30']


def test_time_slots_reject_unknown_granularity(api_client, builder) -> None:
    response = api_client.get(SLOTS_URL, params=slot_params(builder, granularity='hours'))

    assert response.status_code == 400
    assert response.json()['error']['type'] == 'VALIDATION_ERROR'


def test_time_slots_reject_wide_range(api_client, builder) -> None:
    response = api_client.get(SLOTS_URL, params=slot_params(builder, endDate='2030-03-07'))

    assert response.status_code == 400
    assert response.json()['message'] == 'Date range cannot exceed 30 days.'


def test_time_slots_for_unknown_builder_is_resource_error(api_client) -> None:
    response = api_client.get(SLOTS_URL, params={'builderId': 'missing', 'startDate': '2030-01-07', 'endDate': '2030-01-07'})

    assert response.status_code == 404
    assert response.json()['error']['type'] == 'RESOURCE_ERROR'


def test_missing_query_parameter_is_validation_error(api_client) -> None:
    response = api_client.get(SLOTS_URL, params={'startDate': '2030-01-07', 'endDate': '2030-01-07'})

    assert response.status_code == 400
    assert response.json()['error']['type'] == 'VALIDATION_ERROR'
    assert response.json()['error']['detail'][0]['loc'] == ['query', 'builderId']


def test_client_cannot_create_rules(api_client, client_user) -> None:
    response = api_client.post(
        RULES_URL,
        json={'dayOfWeek': 1, 'startTime': '09:00', 'endTime': '17:00'},
        headers=auth_headers(client_user),
    )

    assert response.status_code == 403
    assert response.json()['error']['type'] == 'AUTHORIZATION_ERROR'


def test_rule_with_bad_clock_value_is_rejected(api_client, builder) -> None:
    response = api_client.post(
        RULES_URL,
        json={'dayOfWeek': 1, 'startTime': '9am', 'endTime': '17:00'},
        headers=auth_headers(builder),
    )

    assert response.status_code == 400
    assert response.json()['message'] == 'Time must be in 24-hour format (HH:MM).'


def test_overlapping_rule_is_rejected(api_client, db, builder) -> None:
    make_rule(db, builder, day_of_week=1, start_time='09:00', end_time='12:00')

    response = api_client.post(
        RULES_URL,
        json={'dayOfWeek': 1, 'startTime': '11:00', 'endTime': '13:00'},
        headers=auth_headers(builder),
    )

    assert response.status_code == 400
    assert response.json()['message'] == 'Availability rule overlaps an existing rule for the same day.'


def test_builder_cannot_delete_another_builders_rule(api_client, db, builder) -> None:
    rule = make_rule(db, builder)
    other_builder = make_user(db, BUILDER_ROLE, email='other-builder@example.com')

    response = api_client.delete(f'{RULES_URL}/{rule.id}', headers=auth_headers(other_builder))

    assert response.status_code == 403
    assert db.query(AvailabilityRule).count() == 1


def test_builder_updates_and_deletes_own_rule(api_client, db, builder) -> None:
    rule = make_rule(db, builder)
    headers = auth_headers(builder)

    patched = api_client.patch(f'{RULES_URL}/{rule.id}', json={'endTime': '15:30'}, headers=headers)
    deleted = api_client.delete(f'{RULES_URL}/{rule.id}', headers=headers)

    assert patched.status_code == 200
    assert patched.json()['endTime'] == '15:30'
    assert deleted.status_code == 204
    assert db.query(AvailabilityRule).count() == 0


def test_availability_exception_blocks_time_slots(api_client, db, builder) -> None:
    make_rule(db, builder, day_of_week=1)

    created = api_client.post(
        '/api/scheduling/availability-exceptions',
        json={'startDatetime': '2030-01-07T12:00:00Z', 'endDatetime': '2030-01-07T13:00:00Z', 'title': 'Lunch'},
        headers=auth_headers(builder),
    )
    response = api_client.get(SLOTS_URL, params=slot_params(builder))

    assert created.status_code == 201
    assert created.json()['isAvailable'] is False
    assert [(slot['startTime'][11:16], slot['endTime'][11:16]) for slot in response.json()] == [
        ('09:00', '12:00'),
        ('13:00', '17:00'),
    ]


def test_session_type_lifecycle(api_client, builder) -> None:
    headers = auth_headers(builder)

    created = api_client.post(
        '/api/scheduling/session-types',
        json={'title': ' Code Review ', 'durationMinutes': 45, 'price': '80.00'},
        headers=headers,
    )
    session_type_id = created.json()['id']
    listed = api_client.get('/api/scheduling/session-types', params={'builderId': builder.id})
    patched = api_client.patch(
        f'/api/scheduling/session-types/{session_type_id}',
        json={'isActive': False},
        headers=headers,
    )
    listed_after = api_client.get('/api/scheduling/session-types', params={'builderId': builder.id})

    assert created.status_code == 201
    assert created.json()['title'] == 'Code Review'
    assert created.json()['price'] == 80.0
    assert [item['id'] for item in listed.json()] == [session_type_id]
    assert patched.json()['isActive'] is False
    assert listed_after.json() == []


def test_session_type_rejects_bad_duration(api_client, builder) -> None:
    response = api_client.post(
        '/api/scheduling/session-types',
        json={'title': 'Quick chat', 'durationMinutes': 7, 'price': '10'},
        headers=auth_headers(builder),
    )

    assert response.status_code == 400


def test_client_books_and_builder_confirms(api_client, db, builder, client_user, session_type) -> None:
    make_rule(db, builder, day_of_week=1)

    created = api_client.post(
        BOOKINGS_URL,
        json={
            'builderId': builder.id,
            'sessionTypeId': session_type.id,
            'startTime': '2030-01-07T10:00:00Z',
            'clientTimezone': 'America/Chicago',
        },
        headers=auth_headers(client_user),
    )
    assert created.status_code == 201
    booking = created.json()
    assert booking['status'] == 'pending'
    assert booking['paymentStatus'] == 'unpaid'
    assert booking['endTime'].startswith('2030-01-07T11:00:00')

    client_confirm = api_client.patch(
        f"{BOOKINGS_URL}/{booking['id']}/status",
        json={'status': 'confirmed'},
        headers=auth_headers(client_user),
    )
    assert client_confirm.status_code == 403
    assert client_confirm.json()['error']['type'] == 'AUTHORIZATION_ERROR'

    builder_confirm = api_client.patch(
        f"{BOOKINGS_URL}/{booking['id']}/status",
        json={'status': 'confirmed'},
        headers=auth_headers(builder),
    )
    assert builder_confirm.status_code == 200
    assert builder_confirm.json()['status'] == 'confirmed'


def test_booking_an_unavailable_slot_is_rejected(api_client, db, builder, client_user, session_type) -> None:
    make_rule(db, builder, day_of_week=1)
    make_booking(db, builder, client_user, session_type, MONDAY.replace(hour=10))

    response = api_client.post(
        BOOKINGS_URL,
        json={'builderId': builder.id, 'sessionTypeId': session_type.id, 'startTime': '2030-01-07T10:30:00Z'},
        headers=auth_headers(client_user),
    )

    assert response.status_code == 400
    assert response.json()['message'] == 'The selected time slot is not available.'
    assert db.query(Booking).count() == 1


def test_builder_role_cannot_create_bookings(api_client, builder, session_type) -> None:
    response = api_client.post(
        BOOKINGS_URL,
        json={'builderId': builder.id, 'sessionTypeId': session_type.id, 'startTime': '2030-01-07T10:00:00Z'},
        headers=auth_headers(builder),
    )

    assert response.status_code == 403


@pytest.mark.parametrize('role_filter', ['client', None])
def test_list_bookings_returns_own_bookings(api_client, db, builder, client_user, session_type, role_filter) -> None:
    make_booking(db, builder, client_user, session_type, MONDAY.replace(hour=10))
    stranger = make_user(db, CLIENT_ROLE, email='stranger@example.com')
    params = {'role': role_filter} if role_filter else {}

    own = api_client.get(BOOKINGS_URL, params=params, headers=auth_headers(client_user))
    other = api_client.get(BOOKINGS_URL, params=params, headers=auth_headers(stranger))

    assert len(own.json()) == 1
    assert other.json() == []


def test_get_booking_forbidden_for_non_participant(api_client, db, builder, client_user, session_type) -> None:
    booking = make_booking(db, builder, client_user, session_type, MONDAY.replace(hour=10))
    stranger = make_user(db, CLIENT_ROLE, email='stranger@example.com')

    response = api_client.get(f'{BOOKINGS_URL}/{booking.id}', headers=auth_headers(stranger))

    assert response.status_code == 403


def test_client_cancels_booking(api_client, db, builder, client_user, session_type) -> None:
    booking = make_booking(db, builder, client_user, session_type, MONDAY.replace(hour=10))

    response = api_client.patch(
        f'{BOOKINGS_URL}/{booking.id}/status',
        json={'status': 'cancelled'},
        headers=auth_headers(client_user),
    )

    assert response.status_code == 200
    assert response.json()['status'] == BookingStatus.CANCELLED.value


def test_session_type_duration_is_locked_once_booked(api_client, db, builder, client_user, session_type) -> None:
    booking = make_booking(db, builder, client_user, session_type, MONDAY.replace(hour=10))
    url = f'/api/scheduling/session-types/{session_type.id}'

    rejected = api_client.patch(url, json={'durationMinutes': 30}, headers=auth_headers(builder))
    renamed = api_client.patch(url, json={'title': 'Deep Review', 'durationMinutes': 60}, headers=auth_headers(builder))

    assert rejected.status_code == 400
    assert rejected.json()['error']['type'] == 'VALIDATION_ERROR'
    assert renamed.status_code == 200
    assert renamed.json()['title'] == 'Deep Review'
    db.refresh(session_type)
    db.refresh(booking)
    assert session_type.duration_minutes == 60
    assert (booking.end_time - booking.start_time).total_seconds() == session_type.duration_minutes * 60


def test_session_type_duration_can_change_before_any_booking(api_client, builder, session_type) -> None:
    response = api_client.patch(
        f'/api/scheduling/session-types/{session_type.id}',
        json={'durationMinutes': 30},
        headers=auth_headers(builder),
    )

    assert response.status_code == 200
    assert response.json()['durationMinutes'] == 30
