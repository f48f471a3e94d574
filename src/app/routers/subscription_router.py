"""
Subscription maintenance API
User-initiated cancellation and the lapsed-cancellation sweep. The sweep is
guarded by a static bearer token (``ADMIN_API_TOKEN``); cancellation also
accepts the subscriber's own Supabase session token.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.responses import AuthenticationException, success_response
from schemas import CancelSubscriptionRequest
from services.auth_service import AuthService
from services.reconciliation_service import SubscriptionReconciler
from routers.paypal_router import get_auth_service, get_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])
security = HTTPBearer(auto_error=False)


def get_admin_token() -> Optional[str]:
    from core.factory import ServiceFactory

    return ServiceFactory.get_admin_token()


def _is_admin(credentials: Optional[HTTPAuthorizationCredentials], admin_token: Optional[str]) -> bool:
    return bool(
        admin_token
        and credentials is not None
        and hmac.compare_digest(credentials.credentials, admin_token)
    )


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    admin_token: Optional[str] = Depends(get_admin_token),
) -> None:
    if not admin_token:
        raise AuthenticationException("Maintenance API is disabled")
    if not _is_admin(credentials, admin_token):
        raise AuthenticationException("Invalid API token")


async def get_cancel_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    admin_token: Optional[str] = Depends(get_admin_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> Optional[str]:
    """None for the admin token, otherwise the authenticated user id"""
    if _is_admin(credentials, admin_token):
        return None
    return await auth_service.verify_auth(credentials)


@router.post("/cancel")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    caller_id: Optional[str] = Depends(get_cancel_caller),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    result = await reconciler.cancel_subscription(request.subscription_id, caller_id=caller_id)
    return success_response(data=result, message=result["message"])


@router.post("/expire-lapsed", dependencies=[Depends(require_admin)])
async def expire_lapsed_subscriptions(
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    result = await reconciler.expire_lapsed_cancellations()
    logger.info("Manual expiry sweep processed %s subscriptions", result["processed"])
    return success_response(data=result, message=f"Processed {result['processed']} lapsed cancellations")
