"""
Test fixtures for billing-resilience tests.

Provides in-memory database fixtures and resets the process-wide
resilience state between tests.
"""

import pytest
from datetime import datetime, timezone
from typing import Generator, List
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from billing_resilience import models  # noqa: F401  (registers tables)
from billing_resilience.core.circuit_breaker import CircuitBreakerRegistry, set_notification_callback
from billing_resilience.core.context import clear_context
from billing_resilience.models.subscription import Subscription
from billing_resilience.services.resilient_executor import reset_resilient_executor


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

# Fixed reference time for tests that pass `now` explicitly
FROZEN_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_resilience_state():
    """Drop process-wide breakers, executor and callbacks before each test."""
    CircuitBreakerRegistry.clear()
    reset_resilient_executor()
    set_notification_callback(None)
    clear_context()
    yield
    CircuitBreakerRegistry.clear()
    reset_resilient_executor()
    set_notification_callback(None)
    clear_context()


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def now() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def sample_subscriptions(test_session: Session) -> List[Subscription]:
    """Two existing subscriptions, one linked to a user."""
    subscriptions = [
        Subscription(
            subscription_id="sub_123",
            user_id="user_1",
            tier="pro",
            status="active",
            stripe_customer_id="cus_1",
        ),
        Subscription(subscription_id="sub_456", tier="free", status="trialing"),
    ]
    for s in subscriptions:
        test_session.add(s)
    test_session.commit()
    return subscriptions


@pytest.fixture
def make_subscription_event():
    """Factory for a minimal provider webhook event around a subscription object."""

    def _make(event_id: str, event_type: str = "customer.subscription.updated", subscription_id: str = "sub_123", **fields):
        obj = {"id": subscription_id, "object": "subscription", **fields}
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    return _make


@pytest.fixture
def make_invoice_event():
    """Factory for a provider invoice event."""

    def _make(event_id: str, event_type: str, subscription_id: str = "sub_123", customer: str = "cus_1"):
        obj = {"id": f"in_{event_id}", "object": "invoice", "subscription": subscription_id, "customer": customer}
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    return _make
