"""
Subscription reconciliation route used by the web client on session start
and on later navigations.
"""
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends

from nutritrack.api.deps import get_provider, get_reconcile_limiter, get_settings, get_store
from nutritrack.core.config import Settings
from nutritrack.core.logging import log_event
from nutritrack.core.rate_limit import FixedWindowLimiter
from nutritrack.features.billing.provider import BillingProvider
from nutritrack.features.billing.reconcile import reconcile_subscription
from nutritrack.features.users.store import UserStore
from nutritrack.models.billing import ReconcileRequest, ReconcileResponse


router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(
    request: ReconcileRequest,
    provider: Optional[BillingProvider] = Depends(get_provider),
    store: UserStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    limiter: FixedWindowLimiter = Depends(get_reconcile_limiter),
):
    """
    Return the user's subscription status, re-checking Stripe when due.

    Never fails on provider errors; the stored status is returned instead.
    Forced and session-start checks beyond the per-user limit fall back to
    the cooldown.

    Errors:
        404: Unknown user
    """
    session_start, force = request.session_start, request.force
    if (session_start or force) and not limiter.allow(request.user_id):
        log_event("warning", "billing.reconcile.force_limited", user_id=request.user_id)
        session_start = force = False

    result = reconcile_subscription(
        provider,
        store,
        request.user_id,
        session_start=session_start,
        force=force,
        cooldown=timedelta(seconds=cfg.RECONCILE_COOLDOWN_SECONDS),
    )
    return ReconcileResponse(
        user_id=result.user_id,
        subscription_status=result.status,
        checked=result.checked,
        outcome=result.outcome,
    )
