"""
Webhook receiver: status transitions, correlation, idempotency, and the
no-write guarantees on rejected events.
"""
from sqlalchemy import func, select

from nutritrack.core.database import billing_events
from nutritrack.core.errors import StoreWriteError
from nutritrack.models.user import SubscriptionStatus
from nutritrack.tests.mocks import T0, checkout_completed, sign_payload, stripe_event, subscription_event


def _ledger_count(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(billing_events)).scalar()


def test_checkout_completed_activates_user(store, post_webhook):
    store.create_user("u1", None, T0)

    resp = post_webhook(checkout_completed("evt_1", "u1", customer="cus_1"))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_1", "outcome": "applied"}
    record = store.get_user("u1")
    assert record.stripe_customer_id == "cus_1"
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.email == "u1@example.com"
    assert store.find_user_by_customer("cus_1") == "u1"


def test_subscription_deleted_deactivates_mapped_user(store, post_webhook):
    store.create_user("u1", "u1@example.com", T0)
    post_webhook(checkout_completed("evt_1", "u1", customer="cus_1", created=100))

    # No metadata: resolved through the customer index
    resp = post_webhook(subscription_event("evt_2", "customer.subscription.deleted", "cus_1", "canceled", created=200))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "applied"
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_unresolvable_user_is_rejected_without_writes(store, engine, post_webhook):
    store.create_user("u1", None, T0)

    resp = post_webhook(checkout_completed("evt_1", None, customer="cus_1"))

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "missing_correlation"
    assert _ledger_count(engine) == 0
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE
    assert store.find_user_by_customer("cus_1") is None


def test_subscription_event_for_unknown_customer_is_rejected(engine, post_webhook):
    resp = post_webhook(subscription_event("evt_1", "customer.subscription.updated", "cus_404", "active"))

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "missing_correlation"
    assert _ledger_count(engine) == 0


def test_checkout_without_customer_is_rejected(store, engine, post_webhook):
    store.create_user("u1", None, T0)

    resp = post_webhook(checkout_completed("evt_1", "u1", customer=None))

    assert resp.status_code == 400
    assert _ledger_count(engine) == 0
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_client_reference_id_fallback(store, post_webhook):
    store.create_user("u1", None, T0)

    resp = post_webhook(checkout_completed("evt_1", None, customer="cus_1", client_reference_id="u1"))

    assert resp.status_code == 200
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE


def test_metadata_user_id_wins_over_client_reference_id(store, post_webhook):
    store.create_user("u1", None, T0)
    store.create_user("u2", None, T0)

    post_webhook(checkout_completed("evt_1", "u1", customer="cus_1", client_reference_id="u2"))

    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE
    assert store.get_user("u2").subscription_status == SubscriptionStatus.INACTIVE


def test_subscription_updated_maps_stripe_status(store, post_webhook):
    store.create_user("u1", None, T0)
    post_webhook(checkout_completed("evt_1", "u1", customer="cus_1", created=100))

    post_webhook(subscription_event("evt_2", "customer.subscription.updated", "cus_1", "past_due", user_id="u1", created=200))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE

    post_webhook(subscription_event("evt_3", "customer.subscription.updated", "cus_1", "active", user_id="u1", created=300))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE

    # trialing is not active
    post_webhook(subscription_event("evt_4", "customer.subscription.updated", "cus_1", "trialing", user_id="u1", created=400))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_duplicate_delivery_is_not_reapplied(store, post_webhook):
    store.create_user("u1", None, T0)
    payload = checkout_completed("evt_1", "u1", customer="cus_1")

    first = post_webhook(payload)
    revision = store.get_user("u1").revision
    second = post_webhook(payload)

    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert store.get_user("u1").revision == revision


def test_bad_signature_rejected_without_writes(store, engine, post_webhook):
    store.create_user("u1", None, T0)
    payload = checkout_completed("evt_1", "u1", customer="cus_1")

    resp = post_webhook(payload, signature=sign_payload(payload, secret="whsec_attacker"))

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"
    assert _ledger_count(engine) == 0
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_missing_signature_rejected(store, engine, post_webhook):
    store.create_user("u1", None, T0)

    resp = post_webhook(checkout_completed("evt_1", "u1"), signature="")

    assert resp.status_code == 400
    assert _ledger_count(engine) == 0


def test_unconfigured_webhook_secret_is_a_server_error(store, engine, provider, post_webhook):
    store.create_user("u1", None, T0)
    provider._parser.webhook_secret = None

    resp = post_webhook(checkout_completed("evt_1", "u1"))

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "upstream_provider_error"
    assert _ledger_count(engine) == 0
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_unhandled_event_type_is_acknowledged(store, post_webhook):
    resp = post_webhook(stripe_event("evt_9", "invoice.paid", {"id": "in_1", "customer": "cus_1"}))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"
    row = store.get_event("evt_9")
    assert row.processed
    assert row.outcome == "ignored"


def test_unknown_user_is_ignored(store, post_webhook):
    resp = post_webhook(checkout_completed("evt_1", "ghost", customer="cus_1"))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "user_not_found"
    assert store.find_user_by_customer("cus_1") is None


def test_out_of_order_event_does_not_override_newer_state(store, post_webhook):
    store.create_user("u1", None, T0)
    post_webhook(checkout_completed("evt_1", "u1", customer="cus_1", created=100))
    post_webhook(subscription_event("evt_3", "customer.subscription.deleted", "cus_1", "canceled", created=300))

    # Delivered late, describes an earlier moment
    resp = post_webhook(subscription_event("evt_2", "customer.subscription.updated", "cus_1", "active", created=200))

    assert resp.json()["outcome"] == "stale"
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_event_for_previous_customer_does_not_touch_status(store, post_webhook):
    store.create_user("u1", None, T0)
    post_webhook(checkout_completed("evt_1", "u1", customer="cus_old", created=100))
    post_webhook(checkout_completed("evt_2", "u1", customer="cus_new", created=200))

    resp = post_webhook(subscription_event("evt_3", "customer.subscription.deleted", "cus_old", "canceled", user_id="u1", created=300))

    assert resp.json()["outcome"] == "customer_mismatch"
    record = store.get_user("u1")
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.stripe_customer_id == "cus_new"


def test_store_failure_is_recorded_and_retried(store, post_webhook, monkeypatch):
    store.create_user("u1", None, T0)
    payload = checkout_completed("evt_1", "u1", customer="cus_1")
    original = store.apply_webhook_status

    def failing(*args, **kwargs):
        raise StoreWriteError("database unavailable")

    monkeypatch.setattr(store, "apply_webhook_status", failing)
    resp = post_webhook(payload)

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "store_write_failed"
    row = store.get_event("evt_1")
    assert not row.processed
    assert "database unavailable" in row.error

    monkeypatch.setattr(store, "apply_webhook_status", original)
    retry = post_webhook(payload)

    assert retry.status_code == 200
    assert retry.json()["outcome"] == "applied"
    assert store.get_event("evt_1").processed
    assert store.get_event("evt_1").error is None
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE


def test_webhook_returns_503_when_billing_disabled(store):
    from fastapi.testclient import TestClient

    from nutritrack.core.config import Settings
    from nutritrack.main import create_app

    cfg = Settings(_env_file=None, ENV="test", DATABASE_URL="sqlite://")
    client = TestClient(create_app(cfg, store=store))
    payload = checkout_completed("evt_1", "u1")

    resp = client.post("/api/billing/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"
