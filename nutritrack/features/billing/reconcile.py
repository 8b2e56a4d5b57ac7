"""
Client-triggered subscription reconciliation.

Webhooks are the authoritative writer. This path covers delivery delays:
when the stored status looks wrong, ask the provider directly and correct
the record, at most once per cooldown window per user.

A status only becomes active through a confirmed provider query. Writes are
compare-and-set on the record revision; a webhook that lands in between wins.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from nutritrack.core.config import settings
from nutritrack.core.logging import log_event
from nutritrack.features.billing.provider import BillingProvider, BillingProviderError
from nutritrack.features.users.store import UserStore
from nutritrack.models.user import SubscriptionStatus, UserRecord


@dataclass
class ReconcileResult:
    user_id: str
    status: SubscriptionStatus
    checked: bool  # provider was queried
    outcome: str  # billing_disabled, no_customer, active, cooldown, provider_error, unchanged, corrected, superseded


def _check_due(record: UserRecord, now: datetime, *, session_start: bool, force: bool, cooldown: timedelta) -> bool:
    if force:
        return True
    if record.is_active:
        return False
    if session_start or record.last_reconciled_at is None:
        return True
    return now - record.last_reconciled_at > cooldown


def reconcile_subscription(
    provider: Optional[BillingProvider],
    store: UserStore,
    user_id: str,
    *,
    now: Optional[datetime] = None,
    session_start: bool = False,
    force: bool = False,
    cooldown: Optional[timedelta] = None,
) -> ReconcileResult:
    """
    Re-check a user's subscription against the provider when due.

    Args:
        session_start: first check of a client session; bypasses the cooldown
        force: always query, and allow a downgrade (sign-in, checkout return)
        cooldown: minimum gap between provider checks for an inactive user

    Raises:
        UserNotFoundError: no record for user_id
    """
    now = now or datetime.now(timezone.utc)
    if cooldown is None:
        cooldown = timedelta(seconds=settings.RECONCILE_COOLDOWN_SECONDS)

    record = store.require_user(user_id)

    if provider is None:
        return ReconcileResult(user_id, record.subscription_status, False, "billing_disabled")
    if not record.stripe_customer_id:
        return ReconcileResult(user_id, record.subscription_status, False, "no_customer")

    if not _check_due(record, now, session_start=session_start, force=force, cooldown=cooldown):
        outcome = "active" if record.is_active else "cooldown"
        return ReconcileResult(user_id, record.subscription_status, False, outcome)

    try:
        is_active = provider.has_active_subscription(record.stripe_customer_id)
    except BillingProviderError as e:
        log_event(
            "warning",
            "billing.reconcile.provider_error",
            user_id=user_id,
            error_code="upstream_provider_error",
            extra={"reason": str(e)},
        )
        return ReconcileResult(user_id, record.subscription_status, True, "provider_error")

    status = SubscriptionStatus.ACTIVE if is_active else SubscriptionStatus.INACTIVE
    if status == record.subscription_status:
        store.mark_reconciled(user_id, now)
        return ReconcileResult(user_id, status, True, "unchanged")

    if store.compare_and_set_status(user_id, expected_revision=record.revision, status=status, now=now):
        log_event(
            "info",
            "billing.reconcile.corrected",
            user_id=user_id,
            outcome="corrected",
            extra={"from": record.subscription_status.value, "to": status.value},
        )
        return ReconcileResult(user_id, status, True, "corrected")

    fresh = store.require_user(user_id)
    log_event("info", "billing.reconcile.superseded", user_id=user_id, outcome="superseded")
    return ReconcileResult(user_id, fresh.subscription_status, True, "superseded")
