# nutritrack/conftest.py
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nutritrack.core.config import Settings
from nutritrack.core.database import build_engine, create_all_tables, make_session_factory
from nutritrack.features.users.store import UserStore
from nutritrack.tests.mocks import FakeProvider, WEBHOOK_SECRET, sign_payload


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = build_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return UserStore(make_session_factory(engine))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        STRIPE_SECRET_KEY="sk_test_fake",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_ID="price_test",
        APP_URL="https://app.nutritrack.test",
    )


@pytest.fixture
def app(test_settings, provider, store, engine):
    from nutritrack.main import create_app

    return create_app(test_settings, provider=provider, store=store, engine=engine)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c


@pytest.fixture
def post_webhook(client):
    """POST a Stripe event to the webhook endpoint, signed unless a signature is given."""
    def _post(payload: str, signature: Optional[str] = None):
        sig = signature if signature is not None else sign_payload(payload)
        return client.post(
            "/api/billing/webhook",
            content=payload,
            headers={"Stripe-Signature": sig, "Content-Type": "application/json"},
        )
    return _post
