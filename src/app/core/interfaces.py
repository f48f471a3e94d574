"""
Persistence interfaces
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from core.plan_config import PaymentStatus
from schemas import ProfileUpdate, SubscriptionRecord


class ISubscriptionStore(ABC):
    """``subscriptions`` rows plus the ``profiles`` projection"""

    @abstractmethod
    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[SubscriptionRecord]:
        pass

    @abstractmethod
    async def list_user_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Iterable[PaymentStatus]] = None,
        exclude_provider_id: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        """All rows of a user, optionally filtered by status"""
        pass

    @abstractmethod
    async def list_lapsed_cancellations(self, now_iso: str) -> List[SubscriptionRecord]:
        """Canceled rows whose end_date is before ``now_iso``"""
        pass

    @abstractmethod
    async def insert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        pass

    @abstractmethod
    async def update_subscription(self, record_id: str, **fields) -> None:
        """Single-row update by internal id"""
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, update: ProfileUpdate) -> None:
        """Partial update; columns left as None are not touched"""
        pass


class IUserDirectory(ABC):
    """Account directory used as the last user-id fallback"""

    @abstractmethod
    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        pass


class IAuthService(ABC):
    """Bearer-token verification for user-facing calls"""

    @abstractmethod
    async def verify_auth(self, credentials) -> str:
        """User id behind the token; raises AuthenticationException"""
        pass
