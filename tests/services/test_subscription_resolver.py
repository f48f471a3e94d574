"""Identity, plan and family fallback chains"""
from datetime import datetime, timezone

import pytest

from core.plan_config import PlanIdTable, PaymentStatus, SubscriptionType
from core.responses import UnresolvedUserError
from mocks import InMemorySubscriptionStore
from schemas import PayPalSubscriptionResource, SubscriptionRecord
from services.subscription_resolver import (
    match_plan_by_name_fragment,
    parse_correlation_token,
    resolve_end_date,
    resolve_identity,
    resolve_plan_type,
    resolve_subscription_type,
    resolve_user_id,
)

PLAN_IDS = PlanIdTable(
    bronze_monthly="P-BRONZE-M",
    gold_monthly="P-GOLD-M",
    gold_yearly="P-GOLD-Y",
    diamond_monthly="P-DIAMOND-M",
    diamond_yearly="P-DIAMOND-Y",
    resume_basic="P-RB",
    resume_premium="P-RP",
)


def _resource(**fields):
    return PayPalSubscriptionResource.model_validate({"id": "S-1", **fields})


def test_parse_correlation_token():
    assert parse_correlation_token("gold:U-1") == ("gold", "U-1")
    assert parse_correlation_token("gold") == ("gold", None)
    assert parse_correlation_token("resume_basic:U:2") == ("resume_basic", "U:2")
    assert parse_correlation_token(None) == (None, None)


@pytest.mark.asyncio
async def test_resolve_user_prefers_token_over_email():
    directory = InMemorySubscriptionStore(users={"a@example.com": "U-EMAIL"})
    resource = _resource(custom_id="gold:U-TOKEN", subscriber={"email_address": "a@example.com"})

    assert await resolve_user_id(resource, directory) == "U-TOKEN"


@pytest.mark.asyncio
async def test_resolve_user_falls_back_to_email():
    directory = InMemorySubscriptionStore(users={"a@example.com": "U-EMAIL"})
    resource = _resource(custom_id="gold", subscriber={"email_address": "A@example.com"})

    assert await resolve_user_id(resource, directory) == "U-EMAIL"


@pytest.mark.asyncio
async def test_resolve_user_raises_when_exhausted():
    directory = InMemorySubscriptionStore()
    resource = _resource(subscriber={"email_address": "nobody@example.com"})

    with pytest.raises(UnresolvedUserError) as exc_info:
        await resolve_user_id(resource, directory)

    assert exc_info.value.subscription_id == "S-1"
    assert exc_info.value.status_code == 400


def test_plan_type_chain_order():
    assert resolve_plan_type(_resource(custom_id="megastar:U-1", plan_id="P-GOLD-M"), PLAN_IDS) == "megastar"
    assert resolve_plan_type(_resource(plan_id="P-GOLD-Y"), PLAN_IDS) == "gold"
    assert resolve_plan_type(_resource(plan_id="P-DIAMOND-Y"), PLAN_IDS) == "megastar"
    assert resolve_plan_type(_resource(plan_id="P-RP"), PLAN_IDS) == "resume_premium"
    assert resolve_plan_type(_resource(plan_id="LEGACY-GOLD-PLAN"), PLAN_IDS) == "gold"
    assert resolve_plan_type(_resource(plan_id="P-UNKNOWN"), PLAN_IDS) == "bronze"


def test_plan_type_outside_catalog_falls_through_chain():
    assert resolve_plan_type(_resource(custom_id="platinum:U-1", plan_id="P-DIAMOND-M"), PLAN_IDS) == "diamond"
    assert resolve_plan_type(_resource(custom_id="platinum:U-1", plan_id="GOLD_MONTHLY"), PLAN_IDS) == "gold"
    assert resolve_plan_type(_resource(custom_id="platinum:U-1", plan_id="P-UNKNOWN"), PLAN_IDS) == "bronze"
    assert resolve_subscription_type(_resource(custom_id="resume_gold:U-1", plan_id="P-GOLD-M"), PLAN_IDS) == (
        SubscriptionType.INTERVIEW
    )


def test_name_fragment_match_is_order_sensitive():
    assert match_plan_by_name_fragment("diamond-gold-bundle") == "gold"
    assert match_plan_by_name_fragment("P-DIAMOND-YEARLY") == "diamond"
    assert match_plan_by_name_fragment("bronze") == "bronze"
    assert match_plan_by_name_fragment("P-123") is None


def test_subscription_type_chain():
    assert resolve_subscription_type(_resource(custom_id="resume_basic:U-1"), PLAN_IDS) == SubscriptionType.RESUME
    assert resolve_subscription_type(_resource(plan_id="P-RP"), PLAN_IDS) == SubscriptionType.RESUME
    assert resolve_subscription_type(_resource(plan_id="RESUME-LEGACY"), PLAN_IDS) == SubscriptionType.RESUME
    assert resolve_subscription_type(_resource(plan_id="P-GOLD-M"), PLAN_IDS) == SubscriptionType.INTERVIEW

    stored = SubscriptionRecord(
        payment_provider_subscription_id="S-1",
        plan_type="gold",
        subscription_type=SubscriptionType.RESUME,
        payment_status=PaymentStatus.ACTIVE,
    )
    assert resolve_subscription_type(stored) == SubscriptionType.RESUME

    untyped = stored.model_copy(update={"subscription_type": None, "plan_type": "resume_premium"})
    assert resolve_subscription_type(untyped) == SubscriptionType.RESUME


def test_end_date_prefers_next_billing_time():
    resource = _resource(billing_info={"next_billing_time": "2030-05-01T10:00:00Z"})

    assert resolve_end_date(resource) == "2030-05-01T10:00:00Z"


def test_end_date_from_regular_cycle():
    resource = _resource(
        billing_info={
            "cycle_executions": [
                {
                    "tenure_type": "REGULAR",
                    "cycles_completed": 1,
                    "total_cycles": 12,
                    "cycle_completed_date": "2024-01-31T00:00:00Z",
                }
            ]
        }
    )

    assert resolve_end_date(resource) == "2024-02-29T00:00:00+00:00"


def test_end_date_fallback_uses_billing_period():
    now = datetime(2024, 3, 15, tzinfo=timezone.utc)

    assert resolve_end_date(_resource(plan_id="P-GOLD-M"), now) == "2024-04-15T00:00:00+00:00"
    assert resolve_end_date(_resource(plan_id="P-GOLD-YEARLY"), now) == "2025-03-15T00:00:00+00:00"


@pytest.mark.asyncio
async def test_resolve_identity_explicit_user_wins():
    resource = _resource(custom_id="diamond:U-TOKEN", plan_id="P-DIAMOND-M")

    identity = await resolve_identity(resource, None, PLAN_IDS, user_id="U-EXPLICIT")

    assert identity.user_id == "U-EXPLICIT"
    assert identity.plan_type == "diamond"
    assert identity.subscription_type == SubscriptionType.INTERVIEW
