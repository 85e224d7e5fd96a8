# quizcast/conftest.py
import os

# Must be set before any quizcast module reads settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key")

import pytest  # noqa: E402

from quizcast.tests.mocks import WEBHOOK_SECRET as TEST_WEBHOOK_SECRET  # noqa: E402

TEST_JWT_SECRET = os.environ["AUTH_JWT_SECRET"]


@pytest.fixture(scope="session", autouse=True)
def db_engine():
    """In-memory SQLite engine shared by the whole session (StaticPool)."""
    from quizcast.core.database import init_engine

    engine = init_engine(os.environ["TEST_DATABASE_URL"])
    yield engine
    engine.dispose()


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_engine):
    """Drop and recreate all tables so every test starts from an empty store."""
    from quizcast.core.database import reset_database

    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def default_settings(monkeypatch):
    """Pin settings that tests depend on; individual tests override as needed."""
    from quizcast.core.config import settings

    monkeypatch.setattr(settings, "DAILY_FREE_CREDITS", 2)
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    yield settings


@pytest.fixture
def billing_settings(default_settings, monkeypatch):
    """Billing enabled with test Stripe credentials."""
    monkeypatch.setattr(default_settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(default_settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(default_settings, "STRIPE_MONTHLY_PRICE_ID", "price_monthly")
    monkeypatch.setattr(default_settings, "STRIPE_YEARLY_PRICE_ID", "price_yearly")
    return default_settings


@pytest.fixture
def auth_headers():
    """Build Authorization headers for a test user."""
    from quizcast.core.identity import create_test_jwt

    def _make(user_id: str = "user_alice", email: str = "alice@example.com", role=None):
        token = create_test_jwt(sub=user_id, email=email, role=role, secret=TEST_JWT_SECRET)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from quizcast.main import app

    return TestClient(app)
