import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret')

from booking_platform.database import Base, get_db  # noqa: E402
from booking_platform.models import webhook_event  # noqa: E402, F401
from booking_platform.models.user import ADMIN_ROLE, BUILDER_ROLE, CLIENT_ROLE  # noqa: E402
from booking_platform.payments.stripe_bridge import PaymentBridge  # noqa: E402
from tests.booking_platform.factories import (  # noqa: E402
    WEBHOOK_SECRET,
    FakeStripeClient,
    make_session_type,
    make_user,
)


@pytest.fixture
def db():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def builder(db):
    return make_user(db, BUILDER_ROLE, email='builder@example.com', name='Ada Builder')


@pytest.fixture
def client_user(db):
    return make_user(db, CLIENT_ROLE, email='client@example.com', name='Casey Client')


@pytest.fixture
def admin_user(db):
    return make_user(db, ADMIN_ROLE, email='admin@example.com', name='Admin')


@pytest.fixture
def session_type(db, builder):
    return make_session_type(db, builder)


@pytest.fixture
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture
def api_client(db, fake_stripe):
    from fastapi.testclient import TestClient

    from booking_platform.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.payment_bridge = PaymentBridge(fake_stripe, WEBHOOK_SECRET, app_base_url='https://app.example.com')
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
