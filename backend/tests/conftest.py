"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read once at import time
WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_EMAIL = "admin@example.com"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["ADMIN_EMAIL"] = ADMIN_EMAIL
os.environ["SUPABASE_URL"] = "https://project.supabase.co"
os.environ["SUPABASE_SERVICE_KEY"] = "service_role_key"

from billing.main import app
from billing.core.security import require_auth
from billing.db import redis as redis_module
from billing.db.session import get_db
from billing.models import Base
from billing.models.plan import Plan
from billing.services.stripe_service import get_stripe_client


USER_ID = "6f1c2a9e-3b7d-4e8a-9c0f-1a2b3c4d5e6f"
OTHER_USER_ID = "0a9b8c7d-6e5f-4a3b-8c1d-2e3f4a5b6c7d"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def stripe_subscription(
    subscription_id: str = "sub_123",
    status: str = "active",
    period_start: int = 1767225600,  # 2026-01-01T00:00:00Z
    period_end: int = 1769904000,    # 2026-02-01T00:00:00Z
    on_item: bool = True,
    **extra
) -> dict:
    """A retrieve() result shaped like a Stripe subscription"""
    sub = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "ended_at": None,
        "items": {"object": "list", "data": []},
    }
    if on_item:
        sub["items"]["data"].append({
            "id": "si_1",
            "current_period_start": period_start,
            "current_period_end": period_end,
        })
    else:
        sub["current_period_start"] = period_start
        sub["current_period_end"] = period_end
    sub.update(extra)
    return sub


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Lock store backed by fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def stripe_client() -> Mock:
    """Stand-in for the stripe module handed to services"""
    return Mock()


@pytest.fixture(scope="function")
def plans(db_session: Session) -> dict:
    """Active monthly and annual plans plus a retired monthly plan"""
    monthly = Plan(id="11111111-1111-4111-8111-111111111111", name="Monthly", plan_type="monthly", stripe_price_id="price_monthly")
    annual = Plan(id="22222222-2222-4222-8222-222222222222", name="Annual", plan_type="annual", stripe_price_id="price_annual")
    retired = Plan(id="33333333-3333-4333-8333-333333333333", name="Monthly (2024)", plan_type="monthly", stripe_price_id="price_old", active=False)
    db_session.add_all([retired, monthly, annual])
    db_session.commit()
    return {"monthly": monthly, "annual": annual, "retired": retired}


@pytest.fixture(scope="function")
def current_user() -> dict:
    """Supabase user returned by the auth dependency; tests may mutate it"""
    return {"id": USER_ID, "email": "learner@example.com"}


@pytest.fixture(scope="function")
def client(db_session: Session, stripe_client: Mock, current_user: dict) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Stripe and an authenticated user"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_client] = lambda: stripe_client
    app.dependency_overrides[require_auth] = lambda: current_user

    try:
        # Disable OpenTelemetry instrumentation and schema creation in tests
        with patch('billing.core.otel.configure_telemetry', return_value=False):
            with patch('billing.main.init_db'):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_user(current_user: dict) -> dict:
    """Switch the authenticated user to the configured admin"""
    current_user.update({"id": "9e8d7c6b-5a4f-4e3d-8c2b-1a0f9e8d7c6b", "email": ADMIN_EMAIL})
    return current_user


@pytest.fixture(scope="function")
def post_webhook(client: TestClient):
    """POST an event to the webhook endpoint with a valid signature"""
    def _post(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int = None):
        payload = json.dumps(event)
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": sign_payload(payload, secret=secret, timestamp=timestamp),
            },
        )
    return _post
