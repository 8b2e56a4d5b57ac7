"""
Request/response models for the billing and subscription endpoints.

Field names on the wire are camelCase (`userId`, `isActive`) to match the
web client; Python attributes stay snake_case.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from nutritrack.models.user import SubscriptionStatus


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(_Wire):
    """Request to create a checkout session."""
    user_id: str = Field(alias="userId", min_length=1)
    email: Optional[str] = None


class PortalRequest(_Wire):
    """Request to create a billing portal session."""
    user_id: str = Field(alias="userId", min_length=1)


class SessionUrlResponse(_Wire):
    """Redirect target for checkout or portal."""
    url: str


class WebhookAck(_Wire):
    received: bool = True
    event_id: Optional[str] = None
    outcome: Optional[str] = None


class CheckSubscriptionRequest(_Wire):
    customer_id: str = Field(alias="customerId", min_length=1)


class CheckSubscriptionResponse(_Wire):
    is_active: bool = Field(alias="isActive")


class CustomerLookupRequest(_Wire):
    email: str = Field(min_length=3)


class CustomerLookupResponse(_Wire):
    customer_id: str = Field(alias="customerId")
    email: Optional[str] = None
    has_active_subscription: bool = Field(alias="hasActiveSubscription")
    subscription_status: str = Field(alias="subscriptionStatus")


class ReconcileRequest(_Wire):
    """Server-side re-check of a user's subscription status."""
    user_id: str = Field(alias="userId", min_length=1)
    session_start: bool = Field(False, alias="sessionStart")
    force: bool = False


class ReconcileResponse(_Wire):
    user_id: str = Field(alias="userId")
    subscription_status: SubscriptionStatus = Field(alias="subscriptionStatus")
    checked: bool
    outcome: str
