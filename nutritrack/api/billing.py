"""
Billing API routes.

- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- POST /api/billing/check-subscription: Live subscription check for a customer
- POST /api/billing/customer-lookup: Find a customer by email (non-production only)
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from nutritrack.api.deps import get_provider, get_settings, get_store
from nutritrack.core.config import Settings
from nutritrack.core.errors import NotFoundError
from nutritrack.features.billing.provider import BillingProvider
from nutritrack.features.billing.service import (
    check_subscription,
    lookup_customer,
    process_webhook_event,
    start_checkout,
    start_portal,
)
from nutritrack.features.users.store import UserStore
from nutritrack.models.billing import (
    CheckoutRequest,
    CheckSubscriptionRequest,
    CheckSubscriptionResponse,
    CustomerLookupRequest,
    CustomerLookupResponse,
    PortalRequest,
    SessionUrlResponse,
    WebhookAck,
)


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/checkout", response_model=SessionUrlResponse)
def create_checkout(
    request: CheckoutRequest,
    provider: Optional[BillingProvider] = Depends(get_provider),
    store: UserStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
):
    """
    Create Stripe checkout session for the subscription plan.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        404: Unknown user
        500: Stripe API error
    """
    url = start_checkout(provider, store, user_id=request.user_id, email=request.email, app_url=cfg.APP_URL)
    return SessionUrlResponse(url=url)


@router.post("/portal", response_model=SessionUrlResponse)
def create_portal(
    request: PortalRequest,
    provider: Optional[BillingProvider] = Depends(get_provider),
    store: UserStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
):
    """
    Create Stripe billing portal session.

    Errors:
        503: Billing disabled
        404: Unknown user
        400: No customer (user never checked out)
        500: Stripe API error
    """
    url = start_portal(provider, store, user_id=request.user_id, app_url=cfg.APP_URL)
    return SessionUrlResponse(url=url)


@router.post("/webhook", response_model=WebhookAck)
async def handle_webhook(
    request: Request,
    provider: Optional[BillingProvider] = Depends(get_provider),
    store: UserStore = Depends(get_store),
):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates the user's
    subscription status. Event deduplication uses the Stripe event id
    (billing_events ledger).

    Errors:
        400: Invalid signature or no resolvable user
        500: Store failure (Stripe redelivers)
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = process_webhook_event(provider, store, headers, body)
    return WebhookAck(received=True, event_id=result.event_id, outcome=result.outcome)


@router.post("/check-subscription", response_model=CheckSubscriptionResponse)
def check_subscription_route(
    request: CheckSubscriptionRequest,
    provider: Optional[BillingProvider] = Depends(get_provider),
):
    return CheckSubscriptionResponse(is_active=check_subscription(provider, request.customer_id))


@router.post("/customer-lookup", response_model=CustomerLookupResponse)
def customer_lookup(
    request: CustomerLookupRequest,
    provider: Optional[BillingProvider] = Depends(get_provider),
    cfg: Settings = Depends(get_settings),
):
    """Debug helper for support; hidden in production."""
    if cfg.ENV.lower() == "production":
        raise NotFoundError("Not found")
    summary = lookup_customer(provider, request.email)
    return CustomerLookupResponse(
        customer_id=summary.customer_id,
        email=summary.email,
        has_active_subscription=summary.has_active_subscription,
        subscription_status=summary.subscription_status,
    )
