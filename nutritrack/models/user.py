from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MacroTargets(BaseModel):
    """Daily macro-nutrient goals. Grams, except calories."""
    model_config = ConfigDict(frozen=True)

    calories: float = Field(2000, ge=0)
    protein: float = Field(140, ge=0)
    carbs: float = Field(250, ge=0)
    fat: float = Field(70, ge=0)


DEFAULT_TARGETS = MacroTargets()


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    stripe_customer_id: Optional[str] = None
    targets: MacroTargets = DEFAULT_TARGETS
    revision: int = 0
    status_event_created: Optional[int] = None
    last_reconciled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE


class SignUpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    email: Optional[str] = None


class UserResponse(BaseModel):
    """Client-facing view of a user record."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: Optional[str] = None
    subscription_status: SubscriptionStatus = Field(alias="subscriptionStatus")
    stripe_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")
    targets: MacroTargets

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserResponse":
        return cls(
            user_id=record.user_id,
            email=record.email,
            subscription_status=record.subscription_status,
            stripe_customer_id=record.stripe_customer_id,
            targets=record.targets,
        )
