"""
Plan catalog, subscription families and payment states
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PlanType(str, Enum):
    """Plans that can be persisted as a subscription row"""
    BRONZE = "bronze"
    GOLD = "gold"
    DIAMOND = "diamond"
    MEGASTAR = "megastar"
    RESUME_BASIC = "resume_basic"
    RESUME_PREMIUM = "resume_premium"


class SubscriptionType(str, Enum):
    """Feature family granted by a plan"""
    INTERVIEW = "interview"
    RESUME = "resume"


class PaymentStatus(str, Enum):
    """Per-subscription payment state"""
    ACTIVE = "active"
    PENDING_UPGRADE = "pending_upgrade"
    CANCELED = "canceled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    PAYMENT_FAILED = "payment_failed"
    INACTIVE = "inactive"
    PENDING = "pending"


FREE_TIER = "free"

# statuses that hold an entitlement (soft lock included)
LIVE_STATUSES = (PaymentStatus.ACTIVE, PaymentStatus.PENDING_UPGRADE)

TIER_PRIORITY: Dict[str, int] = {
    PlanType.MEGASTAR.value: 5,
    PlanType.DIAMOND.value: 4,
    PlanType.RESUME_PREMIUM.value: 4,
    PlanType.GOLD.value: 3,
    PlanType.BRONZE.value: 2,
    PlanType.RESUME_BASIC.value: 2,
    FREE_TIER: 1,
}

# interview plans that also unlock resume features
RESUME_INCLUSIVE_PLANS: FrozenSet[str] = frozenset(
    {PlanType.GOLD.value, PlanType.DIAMOND.value, PlanType.MEGASTAR.value}
)

RESUME_PLAN_PREFIX = "resume_"

# provider status -> local payment status, used by the sync pass
PROVIDER_STATUS_MAP: Dict[str, PaymentStatus] = {
    "ACTIVE": PaymentStatus.ACTIVE,
    "CANCELLED": PaymentStatus.CANCELED,
    "EXPIRED": PaymentStatus.EXPIRED,
    "SUSPENDED": PaymentStatus.SUSPENDED,
}


def tier_priority(plan_type: Optional[str]) -> int:
    return TIER_PRIORITY.get(plan_type or "", 0)


def provider_status_to_payment_status(provider_status: Optional[str]) -> PaymentStatus:
    """Map a PayPal subscription status onto the local state machine"""
    return PROVIDER_STATUS_MAP.get((provider_status or "").upper(), PaymentStatus.INACTIVE)


def expired_tier_for(subscription_type: SubscriptionType) -> str:
    """Tier a family falls back to when its subscription expires"""
    if subscription_type == SubscriptionType.RESUME:
        return FREE_TIER
    return PlanType.BRONZE.value


@dataclass(frozen=True)
class PlanIdTable:
    """Configured PayPal plan ids for each tier and billing period"""
    bronze_monthly: Optional[str] = None
    bronze_yearly: Optional[str] = None
    gold_monthly: Optional[str] = None
    gold_yearly: Optional[str] = None
    diamond_monthly: Optional[str] = None
    diamond_yearly: Optional[str] = None
    resume_basic: Optional[str] = None
    resume_premium: Optional[str] = None

    def plan_type_for(self, plan_id: Optional[str]) -> Optional[PlanType]:
        """Exact plan-id lookup; None when the id is not configured"""
        if not plan_id:
            return None

        # diamond yearly is sold as the megastar tier
        mapping = (
            (self.gold_monthly, PlanType.GOLD),
            (self.gold_yearly, PlanType.GOLD),
            (self.diamond_monthly, PlanType.DIAMOND),
            (self.diamond_yearly, PlanType.MEGASTAR),
            (self.bronze_monthly, PlanType.BRONZE),
            (self.bronze_yearly, PlanType.BRONZE),
            (self.resume_basic, PlanType.RESUME_BASIC),
            (self.resume_premium, PlanType.RESUME_PREMIUM),
        )
        for configured_id, plan_type in mapping:
            if configured_id and configured_id == plan_id:
                return plan_type
        return None

    def is_resume_plan_id(self, plan_id: Optional[str]) -> bool:
        if not plan_id:
            return False
        return plan_id in {pid for pid in (self.resume_basic, self.resume_premium) if pid}
