"""
Error taxonomy for the booking API.

Every failure that reaches a client is rendered as the same envelope::

    {"success": false, "message": "...", "error": {"type": "VALIDATION_ERROR", "detail": ...}}

Domain code raises one of the ``DomainException`` subclasses below; the
handlers registered in ``booking_platform.main`` turn them into responses.
"""

from enum import Enum
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class ErrorType(str, Enum):
    AUTHENTICATION = 'AUTHENTICATION_ERROR'
    AUTHORIZATION = 'AUTHORIZATION_ERROR'
    VALIDATION = 'VALIDATION_ERROR'
    RESOURCE = 'RESOURCE_ERROR'
    INTERNAL = 'INTERNAL_ERROR'
    PAYMENT = 'PAYMENT_ERROR'


class PaymentErrorType(str, Enum):
    """Payment processor failure classes, mirroring Stripe's own error types."""

    AUTHENTICATION = 'authentication_error'
    API = 'api_error'
    CARD = 'card_error'
    IDEMPOTENCY = 'idempotency_error'
    INVALID_REQUEST = 'invalid_request_error'
    RATE_LIMIT = 'rate_limit_error'
    CONNECTION = 'connection_error'
    UNKNOWN = 'unknown_error'


STATUS_ERROR_TYPES = {
    status.HTTP_400_BAD_REQUEST: ErrorType.VALIDATION,
    status.HTTP_401_UNAUTHORIZED: ErrorType.AUTHENTICATION,
    status.HTTP_403_FORBIDDEN: ErrorType.AUTHORIZATION,
    status.HTTP_404_NOT_FOUND: ErrorType.RESOURCE,
    status.HTTP_405_METHOD_NOT_ALLOWED: ErrorType.RESOURCE,
    status.HTTP_409_CONFLICT: ErrorType.VALIDATION,
    422: ErrorType.VALIDATION,
}


def error_type_for_status(status_code: int) -> ErrorType:
    return STATUS_ERROR_TYPES.get(status_code, ErrorType.INTERNAL)


def error_envelope(message: str, error_type: ErrorType | str, detail: Any = None) -> dict[str, Any]:
    type_value = error_type.value if isinstance(error_type, Enum) else error_type
    return {
        'success': False,
        'message': message,
        'error': {'type': type_value, 'detail': detail},
    }


def error_response(
    status_code: int,
    message: str,
    error_type: ErrorType | str,
    detail: Any = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_envelope(message, error_type, detail))


class DomainException(Exception):
    """Base exception for all booking domain errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: ErrorType | str = ErrorType.INTERNAL

    def __init__(self, message: str, detail: Any = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        return error_response(self.status_code, self.message, self.error_type, self.detail)


class UnauthorizedException(DomainException):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = ErrorType.AUTHENTICATION


class ForbiddenException(DomainException):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = ErrorType.AUTHORIZATION


class ValidationException(DomainException):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = ErrorType.VALIDATION


class NotFoundException(DomainException):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = ErrorType.RESOURCE


class InternalException(DomainException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = ErrorType.INTERNAL


class ServiceUnavailableException(InternalException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PaymentException(DomainException):
    """Raised when the payment processor rejects or fails an operation."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = ErrorType.PAYMENT

    def __init__(
        self,
        message: str,
        payment_error_type: PaymentErrorType = PaymentErrorType.UNKNOWN,
        code: str | None = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message, detail)
        self.payment_error_type = payment_error_type
        self.code = code
        if payment_error_type == PaymentErrorType.CARD:
            self.status_code = status.HTTP_402_PAYMENT_REQUIRED

    def to_response(self) -> JSONResponse:
        payload = error_envelope(self.message, self.error_type, self.detail)
        payload['error']['paymentType'] = self.payment_error_type.value
        if self.code:
            payload['error']['code'] = self.code
        return JSONResponse(status_code=self.status_code, content=payload)


DATABASE_UNAVAILABLE_MESSAGE = 'Database unavailable. Verify DATABASE_URL and database credentials.'
