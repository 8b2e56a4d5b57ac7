"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic, and lets
tests hand the service a fake.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class BillingWebhookEvent:
    """Verified, normalized provider event."""
    event_id: str
    event_type: str
    created: Optional[int]  # epoch seconds, provider clock
    object_id: Optional[str] = None
    customer_id: Optional[str] = None
    metadata_user_id: Optional[str] = None
    client_reference_id: Optional[str] = None
    status: Optional[str] = None  # subscription status for subscription events
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CustomerSummary:
    customer_id: str
    email: Optional[str]
    subscription_status: str  # latest subscription status, "none" if no subscription
    has_active_subscription: bool


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation
    - Portal session creation
    - Live subscription queries for reconciliation
    - Webhook signature verification and parsing
    """

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: Optional[str],
        customer_id: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a subscription checkout session correlated to `user_id`.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def has_active_subscription(self, customer_id: str) -> bool:
        """
        Ask the provider whether the customer has a live active subscription.

        Raises:
            BillingProviderError: If the provider cannot be reached
        """
        ...

    def find_customer_by_email(self, email: str) -> Optional[CustomerSummary]:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
            BillingConfigError: If no webhook secret is configured
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification/parsing errors."""
    pass


class BillingConfigError(BillingProviderError):
    """Provider is missing configuration it needs (server-side, retryable once fixed)."""
