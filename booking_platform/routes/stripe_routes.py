import asyncio
import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_platform.auth.dependencies import get_current_user
from booking_platform.core.errors import ForbiddenException
from booking_platform.database import get_db
from booking_platform.models.user import User
from booking_platform.payments.stripe_bridge import PaymentBridge
from booking_platform.routes.common import CamelModel, database_unavailable, ensure_database_ready
from booking_platform.scheduling.bookings import load_booking

router = APIRouter(tags=['payments'])

logger = logging.getLogger(__name__)


def get_payment_bridge(request: Request) -> PaymentBridge:
    return request.app.state.payment_bridge


class CreateCheckoutRequest(CamelModel):
    booking_id: str
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: str | None = None


class CheckoutSessionStatusResponse(CamelModel):
    session_id: str
    status: str | None = None
    payment_status: str | None = None
    booking_id: str | None = None
    payment_intent_id: str | None = None


class CreateRefundRequest(CamelModel):
    booking_id: str
    amount: Decimal | None = None
    reason: str | None = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value <= 0:
            raise ValueError('Refund amount must be greater than zero.')
        return value


class RefundResponse(CamelModel):
    refund_id: str
    status: str | None = None
    amount: int | None = None


@router.post('/checkout', response_model=CheckoutSessionResponse)
def create_checkout(
    data: CreateCheckoutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    ensure_database_ready()
    try:
        booking = load_booking(db, data.booking_id)
        return bridge.create_checkout_session(db, booking, current_user, data.success_url, data.cancel_url)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/checkout/{session_id}', response_model=CheckoutSessionStatusResponse)
def get_checkout(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    ensure_database_ready()
    session = bridge.get_checkout_session(session_id)
    if current_user.is_admin:
        return session

    try:
        booking = load_booking(db, session['bookingId']) if session.get('bookingId') else None
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    if booking is None or booking.client_id != current_user.id:
        raise ForbiddenException('Not authorized to view this checkout session.')
    return session


@router.post('/refunds', response_model=RefundResponse)
def create_refund(
    data: CreateRefundRequest,
    db: Session = Depends(get_db),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    ensure_database_ready()
    try:
        booking = load_booking(db, data.booking_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    refund = bridge.refund_booking(booking, data.amount, data.reason)
    logger.info('Refund requested', extra={'booking_id': booking.id, 'refund_id': refund['refundId']})
    return refund


def process_verified_event(db: Session, bridge: PaymentBridge, event: dict[str, Any]) -> dict[str, Any]:
    try:
        ensure_database_ready()
        result = bridge.handle_webhook_event(db, event)
    except Exception as exc:
        # Verified events are always acknowledged.
        logger.exception('Webhook processing failed', extra={'event_id': event.get('id'), 'event_type': event.get('type')})
        try:
            bridge.record_failure(db, event, exc)
        except SQLAlchemyError:
            logger.exception('Could not record webhook failure', extra={'event_id': event.get('id')})
        return {'received': True, 'processed': False}

    return {'received': True, 'processed': not result['duplicate'], **result}


@router.post('/webhook')
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias='stripe-signature'),
    db: Session = Depends(get_db),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    payload = await request.body()

    event = bridge.verify_webhook(payload, stripe_signature)
    return await asyncio.to_thread(process_verified_event, db, bridge, event)
