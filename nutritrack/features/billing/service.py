"""
Billing service orchestrator.

Coordinates, with explicitly passed provider and store:
- Checkout and portal session creation
- Webhook processing (verification, idempotency, status transitions)
- Read-only provider queries used by the web client

All Stripe-specific code is in stripe_provider.py.

Correlation: `metadata.userId` on the checkout session (and, through
subscription_data, on the subscription) is authoritative.
`client_reference_id` is only consulted when metadata carries no user id.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from nutritrack.core.errors import (
    BillingDisabledError,
    MissingCorrelationError,
    NotFoundError,
    SignatureVerificationError,
    UpstreamProviderError,
    ValidationError,
)
from nutritrack.core.logging import log_event
from nutritrack.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
    CustomerSummary,
)
from nutritrack.features.users.store import UserNotFoundError, UserStore
from nutritrack.models.user import SubscriptionStatus


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str  # applied, unchanged, stale, ignored, duplicate, user_not_found, customer_mismatch
    user_id: Optional[str] = None


def require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    if provider is None:
        raise BillingDisabledError("Billing disabled: Stripe is not configured. Set STRIPE_SECRET_KEY.")
    return provider


def start_checkout(
    provider: Optional[BillingProvider],
    store: UserStore,
    *,
    user_id: str,
    email: Optional[str],
    app_url: str,
) -> str:
    """
    Start a subscription checkout for a signed-up user.

    Returns:
        Checkout URL

    Raises:
        BillingDisabledError: Stripe not configured
        NotFoundError: unknown user
        UpstreamProviderError: Stripe call failed
    """
    provider = require_provider(provider)
    record = store.require_user(user_id)
    base = app_url.rstrip("/")

    try:
        url = provider.create_checkout_session(
            user_id=user_id,
            email=email or record.email,
            customer_id=record.stripe_customer_id,
            success_url=f"{base}/dashboard?success=true",
            cancel_url=f"{base}/subscribe?canceled=true",
        )
    except BillingProviderError as e:
        log_event("error", "billing.checkout.failed", user_id=user_id, error_code="upstream_provider_error", extra={"reason": str(e)})
        raise UpstreamProviderError(str(e))

    log_event("info", "billing.checkout.created", user_id=user_id)
    return url


def start_portal(
    provider: Optional[BillingProvider],
    store: UserStore,
    *,
    user_id: str,
    app_url: str,
) -> str:
    """
    Start a billing portal session.

    Raises:
        NotFoundError: unknown user
        ValidationError: user never completed checkout (no customer id)
        UpstreamProviderError: Stripe call failed
    """
    provider = require_provider(provider)
    record = store.require_user(user_id)
    if not record.stripe_customer_id:
        raise ValidationError("No Stripe customer found for this user")

    try:
        url = provider.create_portal_session(
            customer_id=record.stripe_customer_id,
            return_url=f"{app_url.rstrip('/')}/dashboard",
        )
    except BillingProviderError as e:
        log_event("error", "billing.portal.failed", user_id=user_id, error_code="upstream_provider_error", extra={"reason": str(e)})
        raise UpstreamProviderError(str(e))
    return url


def check_subscription(provider: Optional[BillingProvider], customer_id: str) -> bool:
    provider = require_provider(provider)
    try:
        return provider.has_active_subscription(customer_id)
    except BillingProviderError as e:
        raise UpstreamProviderError(str(e))


def lookup_customer(provider: Optional[BillingProvider], email: str) -> CustomerSummary:
    provider = require_provider(provider)
    try:
        summary = provider.find_customer_by_email(email)
    except BillingProviderError as e:
        raise UpstreamProviderError(str(e))
    if summary is None:
        raise NotFoundError("No customer found with this email")
    return summary


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------

def _correlated_user_id(event: BillingWebhookEvent) -> Optional[str]:
    if event.metadata_user_id:
        if event.client_reference_id and event.client_reference_id != event.metadata_user_id:
            log_event(
                "warning",
                "billing.webhook.correlation_mismatch",
                user_id=event.metadata_user_id,
                event_id=event.event_id,
                extra={"client_reference_id": event.client_reference_id},
            )
        return event.metadata_user_id
    return event.client_reference_id


def _handle_checkout_completed(store: UserStore, event: BillingWebhookEvent, now: datetime) -> Tuple[str, str]:
    user_id = _correlated_user_id(event)
    if not user_id:
        raise MissingCorrelationError("No userId in checkout session metadata or client_reference_id")
    if not event.customer_id:
        raise MissingCorrelationError(f"Checkout session for user {user_id} has no customer")

    outcome = store.apply_webhook_status(
        user_id,
        SubscriptionStatus.ACTIVE,
        event_created=event.created,
        now=now,
        customer_id=event.customer_id,
        email=event.customer_email,
    )
    return user_id, outcome


def _resolve_subscription_user(store: UserStore, event: BillingWebhookEvent) -> str:
    user_id = event.metadata_user_id
    if not user_id and event.customer_id:
        user_id = store.find_user_by_customer(event.customer_id)
    if not user_id:
        raise MissingCorrelationError(
            f"No userId in subscription metadata and no user linked to customer {event.customer_id}"
        )
    return user_id


def _apply_subscription_event(
    store: UserStore,
    event: BillingWebhookEvent,
    status: SubscriptionStatus,
    now: datetime,
) -> Tuple[str, str]:
    user_id = _resolve_subscription_user(store, event)
    record = store.require_user(user_id)

    # Events for a customer the user has since moved away from must not touch status
    if record.stripe_customer_id and event.customer_id and record.stripe_customer_id != event.customer_id:
        return user_id, "customer_mismatch"

    outcome = store.apply_webhook_status(
        user_id,
        status,
        event_created=event.created,
        now=now,
        customer_id=event.customer_id,
    )
    return user_id, outcome


def _handle_subscription_updated(store: UserStore, event: BillingWebhookEvent, now: datetime) -> Tuple[str, str]:
    status = SubscriptionStatus.ACTIVE if event.status == "active" else SubscriptionStatus.INACTIVE
    return _apply_subscription_event(store, event, status, now)


def _handle_subscription_deleted(store: UserStore, event: BillingWebhookEvent, now: datetime) -> Tuple[str, str]:
    return _apply_subscription_event(store, event, SubscriptionStatus.INACTIVE, now)


_HANDLERS: Dict[str, Callable[[UserStore, BillingWebhookEvent, datetime], Tuple[str, str]]] = {
    CHECKOUT_COMPLETED: _handle_checkout_completed,
    SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    SUBSCRIPTION_DELETED: _handle_subscription_deleted,
}


def process_webhook_event(
    provider: Optional[BillingProvider],
    store: UserStore,
    headers: Dict[str, str],
    body: bytes,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """
    Process billing webhook event (idempotent).

    1. Verify signature (no writes on failure)
    2. Skip if the event id is already processed
    3. Resolve the user and apply the status transition
    4. Record the event on the ledger

    Raises:
        SignatureVerificationError: signature/payload invalid (400)
        MissingCorrelationError: event cannot be mapped to a user (400)
        UpstreamProviderError: provider misconfigured or unreachable (500)
        StoreWriteError: store failed; provider will redeliver (500)
    """
    provider = require_provider(provider)
    now = now or datetime.now(timezone.utc)

    try:
        event = provider.handle_webhook(headers, body)
    except BillingWebhookError as e:
        log_event("warning", "billing.webhook.rejected", error_code="invalid_signature", extra={"reason": str(e)})
        raise SignatureVerificationError(str(e))
    except BillingProviderError as e:
        log_event("error", "billing.webhook.provider_unavailable", error_code="upstream_provider_error", extra={"reason": str(e)})
        raise UpstreamProviderError(str(e))

    payload_hash = hashlib.sha256(body).hexdigest()

    if store.is_event_processed(event.event_id):
        log_event("info", "billing.webhook.duplicate", event_id=event.event_id, event_type=event.event_type, outcome="duplicate")
        return WebhookOutcome(event.event_id, event.event_type, "duplicate")

    handler = _HANDLERS.get(event.event_type)
    user_id: Optional[str] = None
    if handler is None:
        outcome = "ignored"
    else:
        try:
            user_id, outcome = handler(store, event, now)
        except MissingCorrelationError as e:
            log_event(
                "error",
                "billing.webhook.missing_correlation",
                event_id=event.event_id,
                event_type=event.event_type,
                error_code=e.code,
                extra={"reason": e.message},
            )
            raise
        except UserNotFoundError as e:
            user_id, outcome = e.user_id, "user_not_found"
            log_event("warning", "billing.webhook.user_not_found", user_id=user_id, event_id=event.event_id, event_type=event.event_type)
        except Exception as e:
            _record_failure(store, event, payload_hash, user_id, e, now)
            raise

    store.record_event(
        event.event_id,
        event.event_type,
        payload_hash,
        outcome=outcome,
        user_id=user_id,
        now=now,
    )
    log_event("info", "billing.webhook.processed", user_id=user_id, event_id=event.event_id, event_type=event.event_type, outcome=outcome)
    return WebhookOutcome(event.event_id, event.event_type, outcome, user_id)


def _record_failure(
    store: UserStore,
    event: BillingWebhookEvent,
    payload_hash: str,
    user_id: Optional[str],
    error: Exception,
    now: datetime,
) -> None:
    log_event(
        "error",
        "billing.webhook.failed",
        user_id=user_id,
        event_id=event.event_id,
        event_type=event.event_type,
        extra={"reason": str(error)},
    )
    try:
        store.record_event(
            event.event_id,
            event.event_type,
            payload_hash,
            outcome="failed",
            user_id=user_id,
            now=now,
            error=str(error),
        )
    except Exception as ledger_error:
        # The original error is re-raised by the caller
        log_event("error", "billing.webhook.ledger_write_failed", event_id=event.event_id, extra={"reason": str(ledger_error)})
