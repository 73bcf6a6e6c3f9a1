import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from booking_platform.auth.policy import RolePolicyMiddleware
from booking_platform.core import config
from booking_platform.core.errors import DomainException, ErrorType, error_response, error_type_for_status
from booking_platform.core.logging_context import configure_logging, set_request_id
from booking_platform.database import Base, engine, ensure_booking_schema
from booking_platform.models import availability, booking, session_type, user, webhook_event  # noqa: F401
from booking_platform.payments.stripe_bridge import PaymentBridge
from booking_platform.routes import (
    auth_routes,
    availability_routes,
    booking_routes,
    session_type_routes,
    stripe_routes,
)

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    config.validate_runtime_config()
    initialize_database()

    app.state.payment_bridge = PaymentBridge.from_config()
    logger.info('Booking API started', extra={'environment': config.APP_ENV})
    yield
    app.state.payment_bridge.close()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('X-Request-Id') or str(uuid.uuid4())
        set_request_id(request_id)
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                'Request failed',
                extra={'method': request.method, 'path': request.url.path, 'duration_ms': round(duration_ms, 2)},
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers['X-Request-Id'] = request_id
        logger.info(
            '%s %s %s %.2fms',
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response


def _validation_message(errors: list[dict]) -> str:
    if not errors:
        return 'Invalid request.'
    message = str(errors[0].get('msg', 'Invalid request.'))
    return message.removeprefix('Value error, ')


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = [
            {'loc': list(error.get('loc', ())), 'msg': _validation_message([error]), 'type': error.get('type')}
            for error in errors
        ]
        return error_response(400, _validation_message(errors), ErrorType.VALIDATION, detail)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else 'Request failed.'
        detail = None if isinstance(exc.detail, str) else exc.detail
        return error_response(exc.status_code, message, error_type_for_status(exc.status_code), detail)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception('Unhandled error', extra={'method': request.method, 'path': request.url.path})
        return error_response(500, 'An unexpected error occurred.', ErrorType.INTERNAL)


app = FastAPI(title='Booking Platform API', lifespan=lifespan)

app.add_middleware(RolePolicyMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

register_exception_handlers(app)


@app.get('/')
def root():
    return {'status': 'Booking API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(session_type_routes.router, prefix='/api/scheduling/session-types')
app.include_router(availability_routes.router, prefix='/api/scheduling')
app.include_router(booking_routes.router, prefix='/api/scheduling/bookings')
app.include_router(stripe_routes.router, prefix='/api/stripe')
