"""Pytest fixtures for store service tests."""

import os

# Must be set before any service module reads config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["PAYMENT_DELAY_SECONDS"] = "0"

from datetime import datetime, timedelta
from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient

from auth import ROLE_ADMIN, Principal
from database import SessionLocal, engine
from models import Base, Product
from services.cart_service import CartService
from services.order_service import OrderService, ShippingInfo
from services.payment_processor import MockPaymentProcessor
from services.payment_service import PaymentService

# Principals matching the demo bearer tokens
USER_ID = "user_user-token"
OTHER_USER_ID = "user_test-token"
ADMIN_ID = "user_admin-toke"

USER_HEADERS = {"Authorization": "Bearer user-token-123"}
OTHER_HEADERS = {"Authorization": "Bearer test-token-789"}
ADMIN_HEADERS = {"Authorization": "Bearer admin-token-456"}


class RecordingNotifier:
    """Notification client that keeps events in memory."""

    def __init__(self):
        self.events = []

    async def notify(self, event, order, details=None):
        self.events.append((event, order.id, details or {}))
        return True

    def names(self):
        return [event for event, _, _ in self.events]


class FakeClock:
    """Settable clock for the order service."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_product(db):
    """Create and commit a product."""

    def _make(name="Widget Deluxe", price="50.00", stock=10, sold=0, is_active=True, category="Gadgets"):
        product = Product(
            name=name,
            price=Decimal(price),
            stock=stock,
            sold=sold,
            is_active=is_active,
            category=category,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def processor():
    """Processor that approves every charge instantly."""
    return MockPaymentProcessor(success_rate=1.0, delay=0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 15, 12, 0, 0))


@pytest.fixture
def cart_service(redis_client):
    return CartService(redis_client)


@pytest.fixture
def payment_service(processor):
    return PaymentService(processor)


@pytest.fixture
def order_service(cart_service, payment_service, notifier, clock):
    return OrderService(cart_service, payment_service, notifier, clock=clock)


@pytest.fixture
def user():
    return Principal(id=USER_ID)


@pytest.fixture
def other_user():
    return Principal(id=OTHER_USER_ID)


@pytest.fixture
def admin():
    return Principal(id=ADMIN_ID, role=ROLE_ADMIN)


@pytest.fixture
def shipping():
    return ShippingInfo(
        address="1 Main St",
        city="Springfield",
        state="IL",
        postal_code="62701",
        phone="555-0100",
    )


@pytest.fixture
def client(db, redis_client, processor, notifier):
    """Test client wired to the in-memory database and fake collaborators."""
    from main import app

    app.state.redis_client = redis_client
    app.state.payment_processor = processor
    app.state.notification_client = notifier
    return TestClient(app)
