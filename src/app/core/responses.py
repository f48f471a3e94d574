"""
Shared response models and business exceptions
"""
from datetime import datetime, timezone
from typing import Generic, TypeVar, Optional, Any, Dict
from uuid import uuid4
import logging

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar('T')


class APIResponse(BaseModel, Generic[T]):
    """Standard envelope for the maintenance API"""
    status: str  # "success" or "error"
    data: Optional[T] = None
    message: Optional[str] = None
    error_code: Optional[str] = None


class BusinessException(Exception):
    """Domain error carrying an HTTP status"""
    def __init__(self, message: str, error_code: str = None, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)

    def to_body(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class AuthenticationException(BusinessException):
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, "AUTH_FAILED", 401)


class PermissionDeniedException(BusinessException):
    def __init__(self, message: str = "Not allowed to act on this subscription"):
        super().__init__(message, "FORBIDDEN", 403)


class ValidationException(BusinessException):
    def __init__(self, message: str = "Invalid request payload"):
        super().__init__(message, "VALIDATION_ERROR", 400)


class SignatureError(BusinessException):
    """Webhook authenticity could not be established"""
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, "INVALID_SIGNATURE", 401)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class UnresolvedUserError(BusinessException):
    """Every user-id fallback was exhausted"""
    def __init__(self, subscription_id: Optional[str] = None):
        self.subscription_id = subscription_id
        super().__init__("Unable to determine user ID", "UNRESOLVED_USER", 400)


class SubscriptionNotActiveError(BusinessException):
    """Provider does not report the subscription as ACTIVE"""
    def __init__(self, subscription_id: str, provider_status: str):
        self.subscription_id = subscription_id
        self.provider_status = provider_status
        super().__init__(
            f"Subscription is not active with PayPal (status: {provider_status})",
            "SUBSCRIPTION_NOT_ACTIVE",
            400,
        )

    def to_body(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "paypalStatus": self.provider_status}


class SubscriptionNotFoundError(BusinessException):
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__("Subscription not found", "NOT_FOUND", 404)


class StoreError(BusinessException):
    """A read or write against subscriptions/profiles failed"""
    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {detail}", "STORE_ERROR", 500)


def success_response(data: Any = None, message: str = "ok") -> APIResponse:
    return APIResponse(status="success", data=data, message=message)


def unexpected_error_body(error: Exception, error_id: Optional[str] = None) -> Dict[str, Any]:
    """500 body; errorId lets support find the request in the logs"""
    return {
        "error": str(error) or "An unexpected error occurred",
        "errorId": error_id or uuid4().hex,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
