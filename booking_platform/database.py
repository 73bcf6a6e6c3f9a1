from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from booking_platform.core import config


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith('sqlite'):
        return {'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True}


engine = create_engine(config.DATABASE_URL, echo=config.SQL_ECHO, **_engine_kwargs(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False

ACTIVE_BOOKING_INDEX = 'uq_bookings_builder_active_start'


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_booking_schema() -> None:
    """Bring a bookings table created by an older release up to date."""
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)

        if 'bookings' not in inspector.get_table_names():
            _booking_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
        migration_steps = [
            ('client_timezone', 'ALTER TABLE bookings ADD COLUMN client_timezone VARCHAR'),
            ('builder_timezone', 'ALTER TABLE bookings ADD COLUMN builder_timezone VARCHAR'),
            ('checkout_session_id', 'ALTER TABLE bookings ADD COLUMN checkout_session_id VARCHAR'),
            ('payment_failure_reason', 'ALTER TABLE bookings ADD COLUMN payment_failure_reason VARCHAR'),
            ('amount', 'ALTER TABLE bookings ADD COLUMN amount NUMERIC(10, 2)'),
            ('currency', 'ALTER TABLE bookings ADD COLUMN currency VARCHAR'),
            ('amount_refunded', 'ALTER TABLE bookings ADD COLUMN amount_refunded NUMERIC(10, 2) NOT NULL DEFAULT 0'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_builder_time_range ON bookings(builder_id, start_time, end_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_checkout_session ON bookings(checkout_session_id)')
            )
            connection.execute(
                text(
                    f'CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_BOOKING_INDEX} '
                    "ON bookings(builder_id, start_time) WHERE status IN ('pending', 'confirmed')"
                )
            )

        _booking_schema_checked = True
