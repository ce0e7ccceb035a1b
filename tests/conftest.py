"""
Pytest configuration and shared fixtures for orderflow tests.

Every test gets a fresh in-memory SQLite database. StaticPool keeps one
connection for the whole test, so only one session may have a transaction
open at a time.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("EVENT_BUS_ENABLED", "0")

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderflow.database import Base, get_db, make_engine
from orderflow.main import app
from orderflow.orders import create_order
from orderflow.state_machine import OrderStateMachine


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def engine():
    engine = make_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_order(db):
    """Create a committed order; defaults to a delivery order with a customer email."""
    def _make(**kwargs):
        kwargs.setdefault("fulfillment_type", "delivery")
        kwargs.setdefault("total_amount", Decimal("1500.00"))
        kwargs.setdefault("customer_email", "ada@example.com")
        kwargs.setdefault("customer_name", "Ada Obi")
        return create_order(db, **kwargs)
    return _make


@pytest.fixture
def advance(db):
    """Walk an order through statuses directly, bypassing locks and notifications."""
    sm = OrderStateMachine()

    def _advance(order, *statuses, actor="admin-setup"):
        for status in statuses:
            sm.transition(db, order, status, actor)
        db.commit()
        return order
    return _advance


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
