"""
Identity, plan and family resolution for PayPal subscription resources

Each derivation walks a fixed fallback chain; the order matters and is part
of the contract with the checkout flow that writes ``custom_id``.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from core.interfaces import IUserDirectory
from core.plan_config import (
    PlanIdTable,
    PlanType,
    RESUME_PLAN_PREFIX,
    SubscriptionType,
)
from core.responses import UnresolvedUserError
from schemas import PayPalSubscriptionResource, SubscriptionRecord

logger = logging.getLogger(__name__)

CORRELATION_SEPARATOR = ":"
DEFAULT_PLAN_TYPE = PlanType.BRONZE


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    plan_type: str
    subscription_type: SubscriptionType


def parse_correlation_token(custom_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """``planType:userId`` -> (plan_type, user_id); a bare token is a plan type"""
    if not custom_id:
        return None, None
    if CORRELATION_SEPARATOR in custom_id:
        plan_type, user_id = custom_id.split(CORRELATION_SEPARATOR, 1)
        return plan_type or None, user_id or None
    return custom_id, None


async def resolve_user_id(
    resource: PayPalSubscriptionResource,
    directory: Optional[IUserDirectory],
) -> str:
    _, user_id = parse_correlation_token(resource.custom_id)
    if user_id:
        logger.info("User ID found in custom_id: %s", user_id)
        return user_id

    email = resource.subscriber_email
    if email and directory is not None:
        logger.info("Looking up user by subscriber email")
        user_id = await directory.find_user_id_by_email(email)
        if user_id:
            return user_id
        logger.info("No user found for subscriber email")

    raise UnresolvedUserError(resource.id)


def match_plan_by_name_fragment(plan_id: str) -> Optional[PlanType]:
    """Last-resort guess from tier names embedded in a plan id.

    Known fragility: any id containing e.g. ``DIAMOND`` is classified as
    diamond, including a yearly (megastar) plan whose id was not configured.
    """
    upper = plan_id.upper()
    if "GOLD" in upper:
        return PlanType.GOLD
    if "DIAMOND" in upper:
        return PlanType.DIAMOND
    if "BRONZE" in upper:
        return PlanType.BRONZE
    return None


def _catalog_plan_type(value: Optional[str]) -> Optional[PlanType]:
    try:
        return PlanType(value)
    except ValueError:
        return None


def _token_plan_type(custom_id: Optional[str]) -> Optional[PlanType]:
    token_plan, _ = parse_correlation_token(custom_id)
    if not token_plan:
        return None
    plan_type = _catalog_plan_type(token_plan)
    if plan_type is None:
        logger.warning("Ignoring unknown plan type in custom_id: %s", token_plan)
    return plan_type


def resolve_plan_type(resource: PayPalSubscriptionResource, plan_ids: PlanIdTable) -> str:
    plan_type = _token_plan_type(resource.custom_id)
    if plan_type:
        return plan_type.value

    plan_id = resource.plan_id or resource.id
    if not plan_id:
        logger.warning("No plan ID found in subscription details")
        return DEFAULT_PLAN_TYPE.value

    configured = plan_ids.plan_type_for(plan_id)
    if configured:
        return configured.value

    guessed = match_plan_by_name_fragment(plan_id)
    if guessed:
        logger.warning("Plan type for %s guessed from its name: %s", plan_id, guessed.value)
        return guessed.value

    logger.warning("Could not determine plan type for %s, defaulting to %s", plan_id, DEFAULT_PLAN_TYPE.value)
    return DEFAULT_PLAN_TYPE.value


def is_resume_plan_type(plan_type: Optional[str]) -> bool:
    return bool(plan_type) and plan_type.startswith(RESUME_PLAN_PREFIX)


def resolve_subscription_type(
    source: Union[PayPalSubscriptionResource, SubscriptionRecord],
    plan_ids: Optional[PlanIdTable] = None,
) -> SubscriptionType:
    """Family of a provider resource or a stored row"""
    if source.subscription_type:
        return SubscriptionType(source.subscription_type)

    if isinstance(source, SubscriptionRecord):
        plan_type = source.plan_type
        plan_id = None
    else:
        token_plan = _token_plan_type(source.custom_id)
        plan_type = token_plan.value if token_plan else source.plan_type
        plan_id = source.plan_id

    if is_resume_plan_type(plan_type):
        return SubscriptionType.RESUME

    if plan_id and plan_ids is not None and plan_ids.is_resume_plan_id(plan_id):
        return SubscriptionType.RESUME

    if plan_id and "RESUME" in plan_id.upper():
        return SubscriptionType.RESUME

    return SubscriptionType.INTERVIEW


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_yearly(plan_id: Optional[str]) -> bool:
    return bool(plan_id) and "YEAR" in plan_id


def resolve_end_date(resource: PayPalSubscriptionResource, now: Optional[datetime] = None) -> str:
    """Next billing / expiry timestamp in ISO-8601"""
    billing = resource.billing_info
    if billing and billing.next_billing_time:
        return billing.next_billing_time

    if billing and billing.cycle_executions:
        cycle = billing.cycle_executions[0]
        if cycle.cycles_completed < cycle.total_cycles and cycle.cycle_completed_date:
            completed = _parse_timestamp(cycle.cycle_completed_date)
            if completed is not None:
                if cycle.tenure_type == "REGULAR":
                    return _add_months(completed, 1).isoformat()
                if _is_yearly(resource.plan_id):
                    return _add_months(completed, 12).isoformat()

    moment = now or datetime.now(timezone.utc)
    months = 12 if _is_yearly(resource.plan_id) else 1
    return _add_months(moment, months).isoformat()


async def resolve_identity(
    resource: PayPalSubscriptionResource,
    directory: Optional[IUserDirectory],
    plan_ids: PlanIdTable,
    user_id: Optional[str] = None,
) -> ResolvedIdentity:
    """User, plan and family in one pass; an explicit user_id wins"""
    resolved_user = user_id or await resolve_user_id(resource, directory)
    return ResolvedIdentity(
        user_id=resolved_user,
        plan_type=resolve_plan_type(resource, plan_ids),
        subscription_type=resolve_subscription_type(resource, plan_ids),
    )
