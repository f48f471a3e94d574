"""
Supabase access for subscriptions, profiles and the auth user directory
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from supabase import Client
import logging

from core.interfaces import ISubscriptionStore, IUserDirectory
from core.plan_config import PaymentStatus
from core.responses import StoreError
from schemas import ProfileUpdate, SubscriptionRecord

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = 'subscriptions'
PROFILES_TABLE = 'profiles'

UPDATABLE_SUBSCRIPTION_COLUMNS = {
    'user_id',
    'plan_type',
    'payment_status',
    'end_date',
    'subscription_type',
}


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class DatabaseHelper(ISubscriptionStore, IUserDirectory):
    """Every write is a single-row PostgREST call; there are no transactions"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    def _subscriptions(self):
        return self.supabase.table(SUBSCRIPTIONS_TABLE)

    @staticmethod
    def _to_records(rows: Optional[List[Dict[str, Any]]]) -> List[SubscriptionRecord]:
        return [SubscriptionRecord.model_validate(row) for row in rows or []]

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[SubscriptionRecord]:
        try:
            result = (
                self._subscriptions()
                .select('*')
                .eq('payment_provider_subscription_id', provider_subscription_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Subscription lookup failed for {provider_subscription_id}: {e}")
            raise StoreError('get_subscription_by_provider_id', str(e)) from e

        records = self._to_records(result.data)
        return records[0] if records else None

    async def list_user_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Iterable[PaymentStatus]] = None,
        exclude_provider_id: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        try:
            query = self._subscriptions().select('*').eq('user_id', user_id)
            if statuses is not None:
                query = query.in_('payment_status', [_status_value(s) for s in statuses])
            if exclude_provider_id:
                query = query.neq('payment_provider_subscription_id', exclude_provider_id)
            result = query.execute()
        except Exception as e:
            logger.error(f"Subscription listing failed for user {user_id}: {e}")
            raise StoreError('list_user_subscriptions', str(e)) from e

        return self._to_records(result.data)

    async def list_lapsed_cancellations(self, now_iso: str) -> List[SubscriptionRecord]:
        try:
            result = (
                self._subscriptions()
                .select('*')
                .eq('payment_status', PaymentStatus.CANCELED.value)
                .lt('end_date', now_iso)
                .execute()
            )
        except Exception as e:
            logger.error(f"Lapsed cancellation lookup failed: {e}")
            raise StoreError('list_lapsed_cancellations', str(e)) from e

        return self._to_records(result.data)

    async def insert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        row = record.to_row()
        row.pop('id', None)
        try:
            result = self._subscriptions().insert(row).execute()
        except Exception as e:
            logger.error(f"Subscription insert failed for {record.payment_provider_subscription_id}: {e}")
            raise StoreError('insert_subscription', str(e)) from e

        if not result.data:
            raise StoreError('insert_subscription', 'no row returned')
        return SubscriptionRecord.model_validate(result.data[0])

    async def update_subscription(self, record_id: str, **fields) -> None:
        unknown = set(fields) - UPDATABLE_SUBSCRIPTION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported subscription columns: {sorted(unknown)}")

        update_data = {
            key: _status_value(value) if isinstance(value, Enum) else value
            for key, value in fields.items()
        }
        try:
            self._subscriptions().update(update_data).eq('id', record_id).execute()
        except Exception as e:
            logger.error(f"Subscription update failed for row {record_id}: {e}")
            raise StoreError('update_subscription', str(e)) from e

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> None:
        columns = update.to_columns()
        if not columns:
            return
        try:
            self.supabase.table(PROFILES_TABLE).update(columns).eq('id', user_id).execute()
        except Exception as e:
            logger.error(f"Profile update failed for user {user_id}: {e}")
            raise StoreError('update_profile', str(e)) from e

    async def list_users(self) -> List[Any]:
        try:
            response = self.supabase.auth.admin.list_users()
        except Exception as e:
            logger.error(f"Listing auth users failed: {e}")
            raise StoreError('list_users', str(e)) from e
        return list(getattr(response, 'users', response) or [])

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        """Linear scan of auth users; only used when custom_id carries no user"""
        users = await self.list_users()
        target = email.lower()
        for user in users:
            user_email = getattr(user, 'email', None)
            if user_email and user_email.lower() == target:
                return str(user.id)
        return None
