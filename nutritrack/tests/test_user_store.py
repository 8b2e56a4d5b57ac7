"""
User store: record lifecycle, the two status writers and the event ledger.
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from nutritrack.core.errors import StoreWriteError
from nutritrack.features.users.store import UserNotFoundError, UserStore
from nutritrack.models.user import DEFAULT_TARGETS, MacroTargets, SubscriptionStatus
from nutritrack.tests.mocks import T0


def test_create_user_defaults(store):
    record, created = store.create_user("u1", "u1@example.com", T0)

    assert created is True
    assert record.subscription_status == SubscriptionStatus.INACTIVE
    assert record.stripe_customer_id is None
    assert record.targets == DEFAULT_TARGETS
    assert record.revision == 0
    assert record.created_at == T0


def test_create_user_is_idempotent(store):
    store.create_user("u1", "first@example.com", T0)

    record, created = store.create_user("u1", "second@example.com", T0 + timedelta(days=1))

    assert created is False
    assert record.email == "first@example.com"


def test_update_targets(store):
    store.create_user("u1", None, T0)

    record = store.update_targets("u1", MacroTargets(calories=1800, protein=160, carbs=180, fat=60), T0)

    assert record.targets.calories == 1800
    assert record.targets.protein == 160


def test_update_targets_unknown_user(store):
    with pytest.raises(UserNotFoundError):
        store.update_targets("ghost", DEFAULT_TARGETS, T0)


def test_apply_webhook_status_links_customer_and_bumps_revision(store):
    store.create_user("u1", None, T0)

    outcome = store.apply_webhook_status(
        "u1", SubscriptionStatus.ACTIVE, event_created=100, now=T0, customer_id="cus_1", email="u1@example.com"
    )

    record = store.get_user("u1")
    assert outcome == "applied"
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.stripe_customer_id == "cus_1"
    assert record.email == "u1@example.com"
    assert record.status_event_created == 100
    assert record.revision == 1
    assert store.find_user_by_customer("cus_1") == "u1"


def test_apply_webhook_status_same_event_is_unchanged(store):
    store.create_user("u1", None, T0)
    store.apply_webhook_status("u1", SubscriptionStatus.ACTIVE, event_created=100, now=T0, customer_id="cus_1")

    outcome = store.apply_webhook_status("u1", SubscriptionStatus.ACTIVE, event_created=100, now=T0, customer_id="cus_1")

    assert outcome == "unchanged"
    assert store.get_user("u1").revision == 1


def test_apply_webhook_status_ignores_older_events(store):
    store.create_user("u1", None, T0)
    store.apply_webhook_status("u1", SubscriptionStatus.INACTIVE, event_created=200, now=T0, customer_id="cus_1")

    outcome = store.apply_webhook_status("u1", SubscriptionStatus.ACTIVE, event_created=150, now=T0)

    assert outcome == "stale"
    assert store.get_user("u1").subscription_status == SubscriptionStatus.INACTIVE


def test_apply_webhook_status_unknown_user(store):
    with pytest.raises(UserNotFoundError):
        store.apply_webhook_status("ghost", SubscriptionStatus.ACTIVE, event_created=1, now=T0, customer_id="cus_1")
    assert store.find_user_by_customer("cus_1") is None


def test_compare_and_set_requires_current_revision(store):
    store.create_user("u1", None, T0)
    revision = store.get_user("u1").revision

    assert store.compare_and_set_status("u1", expected_revision=revision, status=SubscriptionStatus.ACTIVE, now=T0)
    assert not store.compare_and_set_status("u1", expected_revision=revision, status=SubscriptionStatus.INACTIVE, now=T0)

    record = store.get_user("u1")
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.revision == revision + 1
    assert record.last_reconciled_at == T0


def test_list_linked_users(store):
    store.create_user("u1", None, T0)
    store.create_user("u2", None, T0)
    store.apply_webhook_status("u2", SubscriptionStatus.ACTIVE, event_created=1, now=T0, customer_id="cus_2")

    assert [r.user_id for r in store.list_linked_users()] == ["u2"]


def test_list_linked_users_pages_after_cursor(store):
    for user_id in ("u1", "u2", "u3"):
        store.create_user(user_id, None, T0)
        store.apply_webhook_status(user_id, SubscriptionStatus.ACTIVE, event_created=1, now=T0, customer_id=f"cus_{user_id}")

    first = store.list_linked_users(page_size=2)
    last = first[-1]
    rest = store.list_linked_users(page_size=2, after=(last.created_at, last.user_id))

    assert [r.user_id for r in first] == ["u1", "u2"]
    assert [r.user_id for r in rest] == ["u3"]


def test_event_ledger_failed_then_processed(store):
    assert store.is_event_processed("evt_1") is False

    assert store.record_event("evt_1", "checkout.session.completed", "h", outcome="failed", user_id="u1", now=T0, error="boom")
    assert store.is_event_processed("evt_1") is False

    assert store.record_event("evt_1", "checkout.session.completed", "h", outcome="applied", user_id="u1", now=T0)
    assert store.is_event_processed("evt_1") is True

    # Already processed: later writes are refused
    assert store.record_event("evt_1", "checkout.session.completed", "h", outcome="applied", user_id="u1", now=T0) is False
    row = store.get_event("evt_1")
    assert row.outcome == "applied"
    assert row.error is None


def test_store_failure_rolls_back_and_closes_session():
    session = Mock()
    session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("db down"))
    store = UserStore(lambda: session)

    with pytest.raises(StoreWriteError):
        store.get_user("u1")

    session.rollback.assert_called_once()
    session.commit.assert_not_called()
    session.close.assert_called_once()
