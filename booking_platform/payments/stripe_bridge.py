"""
Stripe payment bridge.

Creates hosted checkout sessions for bookings and turns Stripe webhook
events into booking payment updates.

Key points:
- The Stripe client is constructed once at application startup and passed
  in; nothing here reads a module-level client.
- Every webhook event id is written to ``processed_webhook_events`` in the
  same transaction as the booking update, so a replayed event is detected
  and skipped instead of re-applied.
- Processor failures are classified into ``PaymentErrorType`` and raised
  as ``PaymentException``.
"""

import json
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_platform.core import config
from booking_platform.core.errors import (
    ForbiddenException,
    InternalException,
    NotFoundException,
    PaymentErrorType,
    PaymentException,
    ValidationException,
)
from booking_platform.models.booking import Booking, BookingStatus, PaymentStatus
from booking_platform.models.session_type import SessionType
from booking_platform.models.user import User
from booking_platform.models.webhook_event import STRIPE_SOURCE, ProcessedWebhookEvent
from booking_platform.scheduling.availability import as_utc, get_zone
from booking_platform.scheduling.bookings import apply_payment_update

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = 'checkout.session.completed'
CHECKOUT_EXPIRED = 'checkout.session.expired'
PAYMENT_FAILED = 'payment_intent.payment_failed'
CHARGE_REFUNDED = 'charge.refunded'

LEDGER_PROCESSED = 'processed'
LEDGER_IGNORED = 'ignored'
LEDGER_FAILED = 'failed'

CHECKOUT_ALLOWED_PAYMENT_STATUSES = {PaymentStatus.UNPAID.value, PaymentStatus.FAILED.value}
REFUNDABLE_PAYMENT_STATUSES = {PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value}
REFUND_REASONS = {'duplicate', 'fraudulent', 'requested_by_customer'}

_STRIPE_ERROR_TYPES: list[tuple[type, PaymentErrorType]] = [
    (stripe.CardError, PaymentErrorType.CARD),
    (stripe.AuthenticationError, PaymentErrorType.AUTHENTICATION),
    (stripe.IdempotencyError, PaymentErrorType.IDEMPOTENCY),
    (stripe.InvalidRequestError, PaymentErrorType.INVALID_REQUEST),
    (stripe.RateLimitError, PaymentErrorType.RATE_LIMIT),
    (stripe.APIConnectionError, PaymentErrorType.CONNECTION),
    (stripe.APIError, PaymentErrorType.API),
]


def classify_stripe_error(error: Exception) -> PaymentErrorType:
    for error_class, error_type in _STRIPE_ERROR_TYPES:
        if isinstance(error, error_class):
            return error_type
    return PaymentErrorType.UNKNOWN


def handle_stripe_error(error: Exception, message: str, log_context: dict[str, Any] | None = None) -> PaymentException:
    """Log a processor failure and convert it into a ``PaymentException``."""
    error_type = classify_stripe_error(error)
    code = getattr(error, 'code', None)
    detail = getattr(error, 'user_message', None) or str(error) or 'Unknown error occurred'

    logger.error(
        'Stripe operation failed',
        extra={**(log_context or {}), 'error_type': error_type.value, 'error_code': code, 'error_detail': detail},
    )
    return PaymentException(message, payment_error_type=error_type, code=code, detail=detail)


def to_minor_units(amount: Decimal | float | int | str) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, None)


def _object_id(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return _field(value, 'id')


def format_session_time(start_time: datetime, timezone_name: str | None) -> str:
    local = as_utc(start_time).astimezone(get_zone(timezone_name))
    return f"{local.strftime('%B')} {local.day}, {local.year} at {local.strftime('%I:%M %p').lstrip('0')}"


class PaymentBridge:
    """Hosted-checkout payments for bookings, backed by an injected ``stripe.StripeClient``."""

    def __init__(
        self,
        client: stripe.StripeClient | None,
        webhook_secret: str,
        webhook_tolerance: int = config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        app_base_url: str = config.APP_BASE_URL,
    ) -> None:
        self._client = client
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._app_base_url = app_base_url.rstrip('/')
        self._handlers: dict[str, Callable[[Session, dict[str, Any]], Booking | None]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            CHECKOUT_EXPIRED: self._on_checkout_expired,
            PAYMENT_FAILED: self._on_payment_failed,
            CHARGE_REFUNDED: self._on_charge_refunded,
        }

    @classmethod
    def from_config(cls) -> 'PaymentBridge':
        client = stripe.StripeClient(config.STRIPE_SECRET_KEY) if config.STRIPE_SECRET_KEY else None
        if client is None:
            logger.warning('STRIPE_SECRET_KEY is not set; checkout and refunds are disabled')
        return cls(client, config.STRIPE_WEBHOOK_SECRET)

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            raise PaymentException(
                'Payment processor is not configured.',
                payment_error_type=PaymentErrorType.AUTHENTICATION,
            )
        return self._client

    def close(self) -> None:
        self._client = None

    # Customers and checkout

    def get_or_create_customer(self, db: Session, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id

        log_context = {'user_id': user.id}
        try:
            existing = self.client.customers.list(params={'email': user.email, 'limit': 1})
            if existing.data:
                customer_id = existing.data[0].id
                logger.info('Found existing customer', extra={**log_context, 'customer_id': customer_id})
            else:
                customer = self.client.customers.create(
                    params={
                        'email': user.email,
                        'name': user.name or user.email,
                        'metadata': {'userId': user.id},
                    }
                )
                customer_id = customer.id
                logger.info('Created new customer', extra={**log_context, 'customer_id': customer_id})
        except stripe.StripeError as exc:
            raise handle_stripe_error(exc, 'Failed to get or create customer', log_context) from exc

        user.stripe_customer_id = customer_id
        db.flush()
        return customer_id

    def default_success_url(self, booking: Booking) -> str:
        return (
            f'{self._app_base_url}{config.CHECKOUT_SUCCESS_PATH}'
            f'?session_id={{CHECKOUT_SESSION_ID}}&booking_id={booking.id}'
        )

    def default_cancel_url(self, booking: Booking) -> str:
        return f'{self._app_base_url}{config.CHECKOUT_CANCEL_PATH}?booking_id={booking.id}'

    def create_checkout_session(
        self,
        db: Session,
        booking: Booking,
        client_user: User,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        """Open a hosted checkout for ``booking`` and remember its session id.

        Returns ``{"sessionId": ..., "url": ...}`` for the client redirect.
        """
        if booking.client_id != client_user.id:
            raise ForbiddenException('Only the client who made this booking can pay for it.')
        if booking.status != BookingStatus.PENDING.value:
            raise ValidationException(f'Booking is {booking.status} and cannot be paid for.')
        if booking.payment_status not in CHECKOUT_ALLOWED_PAYMENT_STATUSES:
            raise ValidationException(f'Booking payment is already {booking.payment_status}.')

        session_type = db.get(SessionType, booking.session_type_id)
        builder = db.get(User, booking.builder_id)
        if session_type is None or builder is None:
            raise NotFoundException('Session type or builder for this booking no longer exists.')

        metadata = {
            'bookingId': booking.id,
            'builderId': booking.builder_id,
            'clientId': booking.client_id,
            'sessionTypeId': booking.session_type_id,
            'startTime': as_utc(booking.start_time).isoformat(),
            'endTime': as_utc(booking.end_time).isoformat(),
        }
        log_context = {'booking_id': booking.id, 'builder_id': booking.builder_id, 'client_id': booking.client_id}

        customer_id = self.get_or_create_customer(db, client_user)
        amount = booking.amount if booking.amount is not None else session_type.price
        currency = (booking.currency or session_type.currency or config.DEFAULT_CURRENCY).lower()
        timezone_name = booking.client_timezone or booking.builder_timezone

        try:
            session = self.client.checkout.sessions.create(
                params={
                    'customer': customer_id,
                    'mode': 'payment',
                    'payment_method_types': ['card'],
                    'client_reference_id': booking.id,
                    'line_items': [
                        {
                            'price_data': {
                                'currency': currency,
                                'product_data': {
                                    'name': f'{session_type.title} with {builder.name or builder.email}',
                                    'description': (
                                        f'{format_session_time(booking.start_time, timezone_name)} ({timezone_name})'
                                    ),
                                },
                                'unit_amount': to_minor_units(amount),
                            },
                            'quantity': 1,
                        }
                    ],
                    'success_url': success_url or self.default_success_url(booking),
                    'cancel_url': cancel_url or self.default_cancel_url(booking),
                    'metadata': metadata,
                    'payment_intent_data': {'metadata': metadata},
                }
            )
        except stripe.StripeError as exc:
            db.rollback()
            raise handle_stripe_error(exc, 'Failed to create checkout session', log_context) from exc

        booking.checkout_session_id = session.id
        apply_payment_update(booking, PaymentStatus.PENDING.value)
        db.commit()
        db.refresh(booking)

        logger.info('Created checkout session', extra={**log_context, 'session_id': session.id})
        return {'sessionId': session.id, 'url': session.url}

    def get_checkout_session(self, session_id: str) -> dict[str, Any]:
        try:
            session = self.client.checkout.sessions.retrieve(session_id, params={'expand': ['payment_intent']})
        except stripe.StripeError as exc:
            raise handle_stripe_error(exc, 'Failed to retrieve checkout session', {'session_id': session_id}) from exc

        metadata = _field(session, 'metadata')
        return {
            'sessionId': _field(session, 'id'),
            'status': _field(session, 'status'),
            'paymentStatus': _field(session, 'payment_status'),
            'bookingId': _field(metadata, 'bookingId') or _field(session, 'client_reference_id'),
            'paymentIntentId': _object_id(_field(session, 'payment_intent')),
        }

    def create_refund(
        self,
        payment_intent_id: str,
        amount: int | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        if reason is not None and reason not in REFUND_REASONS:
            raise ValidationException(f'Refund reason must be one of: {", ".join(sorted(REFUND_REASONS))}.')

        params: dict[str, Any] = {'payment_intent': payment_intent_id}
        if amount is not None:
            params['amount'] = amount
        if reason is not None:
            params['reason'] = reason

        log_context = {'payment_intent_id': payment_intent_id, 'amount': amount, 'reason': reason}
        try:
            refund = self.client.refunds.create(params=params)
        except stripe.StripeError as exc:
            raise handle_stripe_error(exc, 'Failed to create refund', log_context) from exc

        logger.info('Created refund', extra={**log_context, 'refund_id': refund.id, 'refund_status': refund.status})
        return {'refundId': refund.id, 'status': refund.status, 'amount': _field(refund, 'amount')}

    def refund_booking(
        self,
        booking: Booking,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Refund a paid booking; the resulting ``charge.refunded`` webhook updates its state."""
        if booking.payment_status not in REFUNDABLE_PAYMENT_STATUSES or not booking.payment_id:
            raise ValidationException('Only paid bookings can be refunded.')
        amount_minor = to_minor_units(amount) if amount is not None else None
        if amount_minor is not None and booking.amount is not None:
            refundable = to_minor_units(booking.amount) - to_minor_units(booking.amount_refunded or 0)
            if amount_minor > refundable:
                raise ValidationException(
                    'Refund amount exceeds the amount still refundable.',
                    detail={'refundableAmount': float(Decimal(refundable) / 100)},
                )
        return self.create_refund(booking.payment_id, amount_minor, reason)

    # Webhooks

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            raise InternalException('Webhook secret not configured.')
        if not signature:
            logger.warning('Missing Stripe signature header')
            raise ValidationException('Missing stripe-signature header.')

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret, self._webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning('Invalid Stripe webhook signature')
            raise ValidationException('Invalid webhook signature.') from exc
        except ValueError as exc:
            raise ValidationException('Invalid webhook payload.') from exc

        return json.loads(payload.decode('utf-8'))

    def _find_ledger_entry(self, db: Session, event_id: str) -> ProcessedWebhookEvent | None:
        return db.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.source == STRIPE_SOURCE,
            ProcessedWebhookEvent.event_id == event_id,
        ).first()

    def handle_webhook_event(self, db: Session, event: dict[str, Any]) -> dict[str, Any]:
        """Apply one verified event at most once.

        Returns ``{"eventType", "status", "duplicate", "bookingId"}``.
        """
        event_id = event.get('id')
        event_type = event.get('type', '')
        data_object = (event.get('data') or {}).get('object') or {}
        log_context = {'event_id': event_id, 'event_type': event_type}

        if not event_id:
            raise ValidationException('Webhook event has no id.')

        entry = self._find_ledger_entry(db, event_id)
        if entry is not None and entry.status != LEDGER_FAILED:
            logger.info('Skipping already processed webhook event', extra=log_context)
            return {'eventType': event_type, 'status': entry.status, 'duplicate': True, 'bookingId': entry.booking_id}

        handler = self._handlers.get(event_type)
        booking: Booking | None = None
        outcome = LEDGER_IGNORED
        error: str | None = None

        if handler is None:
            logger.info('Unhandled webhook event type', extra=log_context)
        else:
            logger.debug('Processing webhook event', extra=log_context)
            try:
                booking = handler(db, data_object)
                outcome = LEDGER_PROCESSED if booking is not None else LEDGER_IGNORED
            except (ValidationException, NotFoundException) as exc:
                db.rollback()
                error = exc.message
                logger.warning('Webhook event not applied', extra={**log_context, 'reason': exc.message})

        if entry is None:
            entry = ProcessedWebhookEvent(source=STRIPE_SOURCE, event_id=event_id, event_type=event_type)
            db.add(entry)
        entry.status = outcome
        entry.error = error
        entry.booking_id = booking.id if booking is not None else None

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info('Webhook event claimed by a concurrent delivery', extra=log_context)
            return {'eventType': event_type, 'status': LEDGER_PROCESSED, 'duplicate': True, 'bookingId': None}

        if booking is not None:
            logger.info(
                'Webhook event applied',
                extra={
                    **log_context,
                    'booking_id': booking.id,
                    'status': booking.status,
                    'payment_status': booking.payment_status,
                },
            )
        return {
            'eventType': event_type,
            'status': outcome,
            'duplicate': False,
            'bookingId': booking.id if booking is not None else None,
        }

    def record_failure(self, db: Session, event: dict[str, Any], error: Exception) -> None:
        """Note an event whose processing crashed so a replay is allowed to retry it."""
        event_id = event.get('id')
        if not event_id:
            return
        db.rollback()
        entry = self._find_ledger_entry(db, event_id)
        if entry is None:
            entry = ProcessedWebhookEvent(
                source=STRIPE_SOURCE,
                event_id=event_id,
                event_type=event.get('type', ''),
            )
            db.add(entry)
        entry.status = LEDGER_FAILED
        entry.error = str(error)[:1000]
        db.commit()

    def _find_booking(
        self,
        db: Session,
        booking_id: str | None = None,
        checkout_session_id: str | None = None,
        payment_id: str | None = None,
    ) -> Booking:
        booking = None
        if booking_id:
            booking = db.get(Booking, booking_id)
        if booking is None and checkout_session_id:
            booking = db.query(Booking).filter(Booking.checkout_session_id == checkout_session_id).first()
        if booking is None and payment_id:
            booking = db.query(Booking).filter(Booking.payment_id == payment_id).first()
        if booking is None:
            raise NotFoundException(
                'Booking not found for payment event.',
                detail={'bookingId': booking_id, 'checkoutSessionId': checkout_session_id},
            )
        return booking

    def _on_checkout_completed(self, db: Session, session: dict[str, Any]) -> Booking | None:
        metadata = session.get('metadata') or {}
        booking = self._find_booking(
            db,
            booking_id=metadata.get('bookingId') or session.get('client_reference_id'),
            checkout_session_id=session.get('id'),
        )
        if session.get('payment_status') not in (None, 'paid', 'no_payment_required'):
            logger.info(
                'Checkout completed without settled payment',
                extra={'booking_id': booking.id, 'session_payment_status': session.get('payment_status')},
            )
            return None

        apply_payment_update(
            booking,
            PaymentStatus.PAID.value,
            payment_id=_object_id(session.get('payment_intent')) or session.get('id'),
        )
        return booking

    def _on_checkout_expired(self, db: Session, session: dict[str, Any]) -> Booking | None:
        metadata = session.get('metadata') or {}
        booking = self._find_booking(
            db,
            booking_id=metadata.get('bookingId') or session.get('client_reference_id'),
            checkout_session_id=session.get('id'),
        )
        if booking.checkout_session_id and booking.checkout_session_id != session.get('id'):
            logger.info(
                'Ignoring expiry of a superseded checkout session',
                extra={'booking_id': booking.id, 'session_id': session.get('id')},
            )
            return None

        apply_payment_update(booking, PaymentStatus.FAILED.value, failure_reason='Checkout session expired.')
        return booking

    def _on_payment_failed(self, db: Session, payment_intent: dict[str, Any]) -> Booking | None:
        metadata = payment_intent.get('metadata') or {}
        booking = self._find_booking(
            db,
            booking_id=metadata.get('bookingId'),
            checkout_session_id=metadata.get('checkout_session_id'),
            payment_id=payment_intent.get('id'),
        )
        last_error = payment_intent.get('last_payment_error') or {}
        apply_payment_update(
            booking,
            PaymentStatus.FAILED.value,
            payment_id=payment_intent.get('id'),
            failure_reason=last_error.get('message') or 'Payment failed.',
        )
        return booking

    def _on_charge_refunded(self, db: Session, charge: dict[str, Any]) -> Booking | None:
        metadata = charge.get('metadata') or {}
        booking = self._find_booking(
            db,
            booking_id=metadata.get('bookingId'),
            payment_id=_object_id(charge.get('payment_intent')),
        )
        amount = charge.get('amount') or 0
        refunded = charge.get('amount_refunded') or 0
        booking.amount_refunded = Decimal(refunded) / 100
        status = (
            PaymentStatus.REFUNDED.value
            if charge.get('refunded') or (amount and refunded >= amount)
            else PaymentStatus.PARTIALLY_REFUNDED.value
        )
        apply_payment_update(booking, status)
        return booking
