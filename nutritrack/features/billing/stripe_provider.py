"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Every call passes its own api_key; nothing is written to `stripe.api_key`.
"""
import json
from typing import Dict, Any, Optional
import stripe

from nutritrack.features.billing.provider import (
    BillingConfigError,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
    CustomerSummary,
)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str],
        price_id: Optional[str],
        webhook_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.webhook_tolerance = webhook_tolerance

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: Optional[str],
        customer_id: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create Stripe subscription checkout session carrying the user id."""
        if not self.price_id:
            raise BillingProviderError("STRIPE_PRICE_ID not configured")

        params: Dict[str, Any] = dict(
            payment_method_types=["card"],
            line_items=[{"price": self.price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"userId": user_id},
            # Copied onto the subscription so its update/delete events carry it too
            subscription_data={"metadata": {"userId": user_id}},
        )
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self.secret_key,
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def has_active_subscription(self, customer_id: str) -> bool:
        try:
            subscriptions = stripe.Subscription.list(
                api_key=self.secret_key,
                customer=customer_id,
                status="active",
                limit=1,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return len(subscriptions.data) > 0

    def find_customer_by_email(self, email: str) -> Optional[CustomerSummary]:
        try:
            customers = stripe.Customer.list(api_key=self.secret_key, email=email, limit=1)
            if not customers.data:
                return None
            customer = customers.data[0]
            subscriptions = stripe.Subscription.list(
                api_key=self.secret_key,
                customer=customer.id,
                status="all",
                limit=1,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")

        latest = subscriptions.data[0] if subscriptions.data else None
        status = latest.status if latest else "none"
        return CustomerSummary(
            customer_id=customer.id,
            email=customer.email,
            subscription_status=status,
            has_active_subscription=status == "active",
        )

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingConfigError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.webhook_tolerance
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: not a Stripe event")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookEvent:
        """Parse Stripe event into normalized BillingWebhookEvent."""
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        customer_email = data.get("customer_email")
        if not customer_email:
            customer_email = (data.get("customer_details") or {}).get("email")

        return BillingWebhookEvent(
            event_id=event["id"],
            event_type=event["type"],
            created=event.get("created"),
            object_id=data.get("id"),
            customer_id=_id_of(data.get("customer")),
            metadata_user_id=metadata.get("userId") or None,
            client_reference_id=data.get("client_reference_id") or None,
            status=data.get("status"),
            customer_email=customer_email,
            metadata=dict(metadata),
        )
