"""
Scheduled reconciliation job.

Walks every user linked to a billing customer, one page at a time, and
compares the stored status with the provider. Disagreements are reported; with `fix` they are corrected
through the same compare-and-set write the client reconciliation uses.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, List

from nutritrack.core.logging import log_event
from nutritrack.features.billing.provider import BillingProvider, BillingProviderError
from nutritrack.features.users.store import UserStore
from nutritrack.models.user import SubscriptionStatus, UserRecord

JOB_NAME = "system.reconcile"


def _linked_users(store: UserStore, page_size: int) -> Iterator[UserRecord]:
    after = None
    while True:
        page = store.list_linked_users(page_size=page_size, after=after)
        yield from page
        if len(page) < page_size:
            return
        last = page[-1]
        after = (last.created_at, last.user_id)


def run_reconcile_job(
    provider: BillingProvider,
    store: UserStore,
    now: datetime,
    fix: bool = False,
    page_size: int = 100,
) -> Dict[str, Any]:
    """Check every linked user, reading `page_size` records at a time."""
    if page_size < 1:
        raise ValueError("page_size must be at least 1")

    issues: List[Dict[str, Any]] = []
    checked = 0
    corrections = 0
    provider_errors = 0

    for record in _linked_users(store, page_size):
        checked += 1
        try:
            is_active = provider.has_active_subscription(record.stripe_customer_id)
        except BillingProviderError as e:
            provider_errors += 1
            log_event("warning", "billing.reconcile_job.provider_error", user_id=record.user_id, extra={"reason": str(e)})
            continue

        expected = SubscriptionStatus.ACTIVE if is_active else SubscriptionStatus.INACTIVE
        if expected == record.subscription_status:
            continue

        issues.append({
            "type": "status_mismatch",
            "user_id": record.user_id,
            "customer_id": record.stripe_customer_id,
            "stored": record.subscription_status.value,
            "provider": expected.value,
        })
        if fix and store.compare_and_set_status(
            record.user_id,
            expected_revision=record.revision,
            status=expected,
            now=now,
        ):
            corrections += 1

    stats = {
        "users_checked": checked,
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "provider_errors": provider_errors,
    }
    store.record_job_run(
        JOB_NAME,
        started_at=now,
        finished_at=datetime.now(timezone.utc),
        status="success",
        stats_json=json.dumps(stats),
    )
    log_event("info", "billing.reconcile_job.finished", extra=stats)

    return {
        "users_checked": checked,
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "issues": issues,
        "timestamp": now.isoformat(),
    }
