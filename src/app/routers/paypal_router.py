"""
PayPal Webhook Router

One POST endpoint serves two callers:
- the dashboard, sending ``{"action": ...}`` manual reconciliation requests
- PayPal, sending signed ``{"event_type": ...}`` subscription lifecycle events
Signature verification runs before any store access. Manual actions skip it
but require the caller's Supabase session as a bearer token and only act on
the caller's own subscriptions.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from core.request_context import get_request_id
from core.responses import (
    BusinessException,
    PermissionDeniedException,
    SignatureError,
    ValidationException,
    success_response,
    unexpected_error_body,
)
from schemas import MANUAL_ACTIONS, ManualActionRequest, WebhookEvent
from services.auth_service import AuthService
from services.reconciliation_service import SubscriptionReconciler
from services.signature_verifier import WebhookSignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "paypal"])
security = HTTPBearer(auto_error=False)


def get_reconciler() -> SubscriptionReconciler:
    from core.factory import ServiceFactory

    return ServiceFactory.get_reconciler()


def get_signature_verifier() -> WebhookSignatureVerifier:
    from core.factory import ServiceFactory

    return ServiceFactory.get_signature_verifier()


def get_auth_service() -> AuthService:
    from core.factory import ServiceFactory

    return ServiceFactory.get_auth_service()


def _parse_payload(raw: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationException("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationException("Invalid JSON payload")
    return payload


async def _dispatch_manual_action(
    payload: Dict[str, Any],
    reconciler: SubscriptionReconciler,
    auth_service: AuthService,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Dict[str, Any]:
    caller_id = await auth_service.verify_auth(credentials)

    try:
        request = ManualActionRequest.model_validate(payload)
    except ValidationError as e:
        raise ValidationException(f"Invalid manual action: {e.errors()[0]['msg']}")

    logger.info(
        "[PAYPAL] manual action=%s subscription=%s user=%s caller=%s",
        request.action,
        request.subscription_id,
        request.user_id,
        caller_id,
    )
    if request.user_id and request.user_id != caller_id:
        raise PermissionDeniedException("user_id does not match the authenticated user")

    if request.action == "force_link":
        return await reconciler.force_link(
            request.subscription_id,
            caller_id,
            is_upgrade=request.is_upgrade,
            is_new_subscription=request.is_new_subscription,
            caller_id=caller_id,
        )
    if request.action == "sync_subscriptions":
        return await reconciler.sync_subscriptions(caller_id)
    return await reconciler.acknowledge_cancel()


async def _dispatch_event(
    raw: bytes,
    payload: Dict[str, Any],
    request: Request,
    reconciler: SubscriptionReconciler,
    verifier: WebhookSignatureVerifier,
) -> Dict[str, Any]:
    if not await verifier.verify(raw, request.headers):
        logger.warning("[PAYPAL] rejected webhook %s: signature not verified", payload.get("event_type"))
        raise SignatureError()

    try:
        event = WebhookEvent.model_validate(payload)
    except ValidationError as e:
        raise ValidationException(f"Invalid webhook event: {e.errors()[0]['msg']}")

    return await reconciler.handle_event(event)


@router.get("/paypal")
async def paypal_webhook_get():
    return success_response(data={"ok": True}, message="paypal webhook alive")


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    verifier: WebhookSignatureVerifier = Depends(get_signature_verifier),
    auth_service: AuthService = Depends(get_auth_service),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    raw = await request.body()
    logger.info("[PAYPAL] request received: len=%s", len(raw))

    try:
        payload = _parse_payload(raw)

        if payload.get("action") in MANUAL_ACTIONS:
            return await _dispatch_manual_action(payload, reconciler, auth_service, credentials)

        if payload.get("event_type"):
            return await _dispatch_event(raw, payload, request, reconciler, verifier)

        raise ValidationException("Unrecognized request format")

    except BusinessException as e:
        return JSONResponse(status_code=e.status_code, content=e.to_body())
    except Exception as e:
        error_id = get_request_id()
        logger.exception("[PAYPAL] unexpected failure (errorId=%s): %s", error_id, e)
        return JSONResponse(status_code=500, content=unexpected_error_body(e, error_id))
