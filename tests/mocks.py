"""
In-memory doubles for the store, the user directory, auth and PayPal
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from core.interfaces import IAuthService, ISubscriptionStore, IUserDirectory
from core.plan_config import PaymentStatus, SubscriptionType
from core.responses import AuthenticationException, StoreError
from schemas import PayPalSubscriptionResource, ProfileUpdate, SubscriptionRecord
from services.paypal_client import ProviderError, UNKNOWN_PROVIDER_STATUS


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class InMemorySubscriptionStore(ISubscriptionStore, IUserDirectory):
    """Dict-backed ``subscriptions``/``profiles`` with a write journal"""

    def __init__(self, users: Optional[Dict[str, str]] = None):
        self.rows: Dict[str, SubscriptionRecord] = {}
        self.profiles: Dict[str, Dict[str, str]] = {}
        self.users = users or {}
        self.writes: List[Tuple[str, Any]] = []
        self.failing_provider_ids: Set[str] = set()
        self._next_id = 1

    # test helpers -----------------------------------------------------

    def add(
        self,
        provider_id: str,
        user_id: str,
        plan_type: str,
        status: PaymentStatus = PaymentStatus.ACTIVE,
        subscription_type: Optional[SubscriptionType] = None,
        end_date: Optional[str] = None,
    ) -> SubscriptionRecord:
        record = SubscriptionRecord(
            id=f"row-{self._next_id}",
            user_id=user_id,
            payment_provider_subscription_id=provider_id,
            plan_type=plan_type,
            subscription_type=subscription_type,
            payment_status=status,
            end_date=end_date,
        )
        self._next_id += 1
        self.rows[record.id] = record
        return record

    def get(self, provider_id: str) -> Optional[SubscriptionRecord]:
        for row in self.rows.values():
            if row.payment_provider_subscription_id == provider_id:
                return row
        return None

    def status_of(self, provider_id: str) -> PaymentStatus:
        return self.get(provider_id).payment_status

    def live_rows(self, user_id: str) -> List[SubscriptionRecord]:
        return [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and row.payment_status in (PaymentStatus.ACTIVE, PaymentStatus.PENDING_UPGRADE)
        ]

    # ISubscriptionStore -----------------------------------------------

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[SubscriptionRecord]:
        return self.get(provider_subscription_id)

    async def list_user_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Iterable[PaymentStatus]] = None,
        exclude_provider_id: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        wanted = set(statuses) if statuses is not None else None
        return [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and (wanted is None or row.payment_status in wanted)
            and row.payment_provider_subscription_id != exclude_provider_id
        ]

    async def list_lapsed_cancellations(self, now_iso: str) -> List[SubscriptionRecord]:
        now = _parse(now_iso)
        return [
            row
            for row in self.rows.values()
            if row.payment_status == PaymentStatus.CANCELED
            and row.end_date
            and _parse(row.end_date) < now
        ]

    async def insert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if self.get(record.payment_provider_subscription_id):
            raise StoreError("insert_subscription", "duplicate payment_provider_subscription_id")
        stored = record.model_copy(update={"id": f"row-{self._next_id}"})
        self._next_id += 1
        self.rows[stored.id] = stored
        self.writes.append(("insert", stored.payment_provider_subscription_id))
        return stored

    async def update_subscription(self, record_id: str, **fields) -> None:
        row = self.rows[record_id]
        if row.payment_provider_subscription_id in self.failing_provider_ids:
            raise StoreError("update_subscription", "simulated outage")
        self.rows[record_id] = row.model_copy(update=fields)
        self.writes.append(("update", row.payment_provider_subscription_id, fields))

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> None:
        columns = update.to_columns()
        if not columns:
            return
        self.profiles.setdefault(user_id, {}).update(columns)
        self.writes.append(("profile", user_id, columns))

    # IUserDirectory ---------------------------------------------------

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        return self.users.get(email.lower())


class FakePayPalClient:
    """Scripted PayPal: subscriptions by id, recorded cancels and verifications"""

    def __init__(self, verification_status: str = "SUCCESS"):
        self.subscriptions: Dict[str, PayPalSubscriptionResource] = {}
        self.canceled: List[Tuple[str, str]] = []
        self.strict_canceled: List[Tuple[str, str]] = []
        self.verifications: List[Dict[str, Any]] = []
        self.verification_status = verification_status
        self.strict_cancel_error: Optional[ProviderError] = None

    def set_subscription(self, subscription_id: str, status: str = "ACTIVE", **fields: Any) -> None:
        self.subscriptions[subscription_id] = PayPalSubscriptionResource.model_validate(
            {"id": subscription_id, "status": status, **fields}
        )

    async def get_subscription_details(self, subscription_id: str) -> PayPalSubscriptionResource:
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise ProviderError("PayPal subscription not found.", 404, {"name": "RESOURCE_NOT_FOUND"})

    async def get_subscription_status(self, subscription_id: str):
        try:
            details = await self.get_subscription_details(subscription_id)
        except ProviderError:
            return UNKNOWN_PROVIDER_STATUS, None
        return (details.status or UNKNOWN_PROVIDER_STATUS).upper(), details

    async def cancel_subscription(self, subscription_id: str, reason: str) -> bool:
        self.canceled.append((subscription_id, reason))
        return True

    async def cancel_subscription_strict(self, subscription_id: str, reason: str) -> None:
        if self.strict_cancel_error is not None:
            raise self.strict_cancel_error
        self.strict_canceled.append((subscription_id, reason))

    async def verify_webhook_signature(self, verification: Dict[str, Any]) -> Dict[str, Any]:
        self.verifications.append(verification)
        return {"verification_status": self.verification_status}


class FakeAuthService(IAuthService):
    """Bearer token -> user id lookup"""

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self.tokens = tokens or {}

    async def verify_auth(self, credentials) -> str:
        if credentials is None:
            raise AuthenticationException("Missing bearer token")
        try:
            return self.tokens[credentials.credentials]
        except KeyError:
            raise AuthenticationException("Invalid token")
