"""
Request, provider-resource and persistence models
PayPal payloads are partial: every field the resolver relies on is optional
and unknown fields are kept.
"""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.plan_config import PaymentStatus, SubscriptionType


class PayPalSubscriber(BaseModel):
    model_config = ConfigDict(extra="allow")

    email_address: Optional[str] = None


class PayPalCycleExecution(BaseModel):
    model_config = ConfigDict(extra="allow")

    tenure_type: Optional[str] = None
    cycles_completed: int = 0
    total_cycles: int = 0
    cycle_completed_date: Optional[str] = None


class PayPalBillingInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    next_billing_time: Optional[str] = None
    cycle_executions: List[PayPalCycleExecution] = Field(default_factory=list)


class PayPalSubscriptionResource(BaseModel):
    """PayPal subscription resource as sent in webhooks or returned by GET"""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    custom_id: Optional[str] = None
    status_change_note: Optional[str] = None
    subscriber: Optional[PayPalSubscriber] = None
    billing_info: Optional[PayPalBillingInfo] = None
    # only present when the resource was enriched locally
    plan_type: Optional[str] = None
    subscription_type: Optional[SubscriptionType] = None

    @property
    def subscriber_email(self) -> Optional[str]:
        if self.subscriber and self.subscriber.email_address:
            return self.subscriber.email_address
        nested = (self.model_extra or {}).get("resource")
        if isinstance(nested, dict):
            email = (nested.get("subscriber") or {}).get("email_address")
            if isinstance(email, str) and email:
                return email
        return None


class WebhookEventType(str, Enum):
    """Subscription lifecycle events this service reacts to"""
    ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
    CREATED = "BILLING.SUBSCRIPTION.CREATED"
    REACTIVATED = "BILLING.SUBSCRIPTION.RE-ACTIVATED"
    CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
    EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
    PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"
    SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
    UPDATED = "BILLING.SUBSCRIPTION.UPDATED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "WebhookEventType":
        normalized = (raw or "").strip().upper()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.UNKNOWN

    @property
    def is_informational(self) -> bool:
        return self in (WebhookEventType.UPDATED, WebhookEventType.UNKNOWN)


class WebhookEvent(BaseModel):
    """PayPal webhook envelope"""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    event_type: str
    resource_type: Optional[str] = None
    resource: Optional[PayPalSubscriptionResource] = None


ManualAction = Literal["force_link", "cancel", "sync_subscriptions"]
MANUAL_ACTIONS = ("force_link", "cancel", "sync_subscriptions")


class ManualActionRequest(BaseModel):
    """Dashboard-triggered reconciliation request"""
    model_config = ConfigDict(extra="allow")

    action: ManualAction
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    is_upgrade: bool = False
    is_new_subscription: bool = False


class SubscriptionRecord(BaseModel):
    """Row of the ``subscriptions`` table"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    user_id: Optional[str] = None
    payment_provider_subscription_id: str
    plan_type: str
    subscription_type: Optional[SubscriptionType] = None
    payment_status: PaymentStatus
    end_date: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ProfileUpdate(BaseModel):
    """Partial write to the ``profiles`` projection; None means untouched"""
    subscription_tier: Optional[str] = None
    subscription_status: Optional[str] = None
    resume_subscription_tier: Optional[str] = None
    resume_subscription_status: Optional[str] = None

    @classmethod
    def for_family(
        cls,
        subscription_type: SubscriptionType,
        *,
        tier: Optional[str] = None,
        status: Optional[str] = None,
    ) -> "ProfileUpdate":
        if subscription_type == SubscriptionType.RESUME:
            return cls(resume_subscription_tier=tier, resume_subscription_status=status)
        return cls(subscription_tier=tier, subscription_status=status)

    def merge(self, other: "ProfileUpdate") -> "ProfileUpdate":
        return ProfileUpdate(**{**self.to_columns(), **other.to_columns()})

    def to_columns(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


class CancelSubscriptionRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)
