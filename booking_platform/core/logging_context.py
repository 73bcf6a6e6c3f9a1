"""Request-scoped logging context.

Every log record emitted while a request is being served carries the
request id, so a booking or webhook can be traced across modules::

    logger.info('Booking created', extra={'booking_id': booking.id})
    # 2026-01-05 09:00:00 INFO [3f2c...] booking_platform.scheduling.bookings: Booking created
"""

import logging
from contextvars import ContextVar

from booking_platform.core import config

LOG_FORMAT = '%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s'

_request_id: ContextVar[str] = ContextVar('request_id', default='-')


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Injects request_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(level or config.LOG_LEVEL)

    for handler in root.handlers:
        if any(isinstance(f, RequestIdFilter) for f in handler.filters):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)
