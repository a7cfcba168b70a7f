"""
Root test configuration and fixtures.

Every test gets its own in-memory SQLite database with the full schema, a
pinned clock, explicit settings and an in-memory billing gateway.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from src.config.billing_plans import reset_billing_plans_loader  # noqa: E402
from src.config.subscription import SubscriptionSettings, reset_subscription_settings  # noqa: E402
from src.db_base import Base  # noqa: E402
from src.integrations.stripe.billing_client import (  # noqa: E402
    BillingAPIError,
    BillingGateway,
    BillingSession,
    RemoteCustomer,
    RemoteSubscription,
    RemoteSubscriptionItem,
)
from src.models.role import Role, UserRoleAssignment  # noqa: E402
from src.models.subscription import Subscription  # noqa: E402
from src.models.user import User  # noqa: E402
import src.models  # noqa: E402,F401 - registers all model metadata


FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh SQLite in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(db_session_factory) -> Generator[Session, None, None]:
    """Session bound to the per-test database; services commit through it."""
    session = db_session_factory()
    yield session
    session.close()


# =============================================================================
# Clock and settings
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def settings() -> SubscriptionSettings:
    return SubscriptionSettings(
        env="test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_secret",
        billing_api_timeout_seconds=1.0,
        frontend_url="https://app.example.com",
    )


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_subscription_settings()
    reset_billing_plans_loader()
    yield
    reset_subscription_settings()
    reset_billing_plans_loader()


# =============================================================================
# Billing gateway
# =============================================================================

class FakeBillingGateway(BillingGateway):
    """In-memory gateway; per-customer subscriptions or errors."""

    def __init__(self):
        self.subscriptions: Dict[str, List[RemoteSubscription]] = {}
        self.errors: Dict[str, Exception] = {}
        self.default_error: Optional[Exception] = None
        self.calls: List[str] = []
        self.created_customers: List[RemoteCustomer] = []
        self.checkout_params: List[dict] = []
        self.portal_requests: List[tuple] = []
        self.closed = False

    def set_subscriptions(self, customer_id: str, subscriptions: List[RemoteSubscription]):
        self.subscriptions[customer_id] = list(subscriptions)

    def fail(self, customer_id: Optional[str] = None, error: Optional[Exception] = None):
        error = error or BillingAPIError("Service unavailable", status_code=503, retryable=True)
        if customer_id is None:
            self.default_error = error
        else:
            self.errors[customer_id] = error

    async def list_subscriptions(self, customer_id, status="all", limit=100, paginate=False):
        self.calls.append(customer_id)
        error = self.errors.get(customer_id) or self.default_error
        if error is not None:
            raise error
        return list(self.subscriptions.get(customer_id, []))[: None if paginate else limit]

    async def retrieve_customer(self, customer_id):
        return RemoteCustomer(id=customer_id)

    async def create_customer(self, email, name, metadata=None):
        customer = RemoteCustomer(id=f"cus_new_{len(self.created_customers) + 1}", email=email, name=name)
        self.created_customers.append(customer)
        return customer

    async def create_checkout_session(self, params):
        self.checkout_params.append(params)
        return BillingSession(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")

    async def create_billing_portal_session(self, customer_id, return_url):
        self.portal_requests.append((customer_id, return_url))
        return BillingSession(id="bps_test_1", url="https://billing.stripe.com/p/session/bps_test_1")

    async def close(self):
        self.closed = True


@pytest.fixture
def gateway() -> FakeBillingGateway:
    return FakeBillingGateway()


def remote_subscription(
    remote_id: str,
    customer_id: str,
    status: str = "active",
    items: Optional[List[RemoteSubscriptionItem]] = None,
    trial_ends_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
) -> RemoteSubscription:
    items = items if items is not None else [
        RemoteSubscriptionItem(id=f"si_{remote_id}", price_ref="price_monthly_pln", product_ref="prod_1")
    ]
    return RemoteSubscription(
        id=remote_id,
        customer_id=customer_id,
        status=status,
        price_ref=items[0].price_ref if items else None,
        trial_ends_at=trial_ends_at,
        ends_at=ends_at,
        items=items,
    )


@pytest.fixture
def make_remote_subscription():
    return remote_subscription


# =============================================================================
# Model factories
# =============================================================================

@pytest.fixture
def make_user(db_session, now):
    """
    Factory fixture that persists a user with the given roles.

    Usage:
        user = make_user(roles=["admin", "premium"], remote_customer_id="cus_1")
    """
    def _make(
        roles: Optional[List[str]] = None,
        remote_customer_id: Optional[str] = None,
        trial_ends_at: Optional[datetime] = None,
        last_sync_at: Optional[datetime] = None,
        is_deleted: bool = False,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=f"user-{uuid.uuid4().hex[:8]}@example.com",
            name="Test User",
            remote_customer_id=remote_customer_id,
            trial_ends_at=trial_ends_at,
            last_sync_at=last_sync_at,
            is_deleted=is_deleted,
        )
        db_session.add(user)
        db_session.flush()

        for name in roles or []:
            role = db_session.query(Role).filter(Role.name == name).first()
            if role is None:
                role = Role(name=name)
                db_session.add(role)
                db_session.flush()
            db_session.add(UserRoleAssignment(user_id=user.id, role_id=role.id, assigned_at=now))

        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_subscription(db_session, now):
    """Factory fixture that persists a cached subscription row for a user."""
    def _make(
        user: User,
        remote_id: Optional[str] = None,
        status: str = "active",
        updated_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        failed_payment_count: int = 0,
    ) -> Subscription:
        subscription = Subscription(
            remote_id=remote_id or f"sub_{uuid.uuid4().hex[:12]}",
            user_id=user.id,
            status=status,
            price_ref="price_monthly_pln",
            quantity=1,
            ends_at=ends_at,
            failed_payment_count=failed_payment_count,
            created_at=updated_at or now,
            updated_at=updated_at or now,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture
def hours_ago(now):
    return lambda hours: now - timedelta(hours=hours)


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
