"""PayPal REST API client"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from schemas import PayPalSubscriptionResource


logger = logging.getLogger(__name__)

UNKNOWN_PROVIDER_STATUS = "OTHER"


class ProviderError(RuntimeError):
    """Non-2xx or unreadable response from PayPal"""

    def __init__(
        self,
        message: str,
        status_code: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.code = code or self._extract_error_code()

    def _extract_error_code(self) -> Optional[str]:
        if not isinstance(self.payload, dict):
            return None
        name = self.payload.get("name") or self.payload.get("error")
        return name if isinstance(name, str) else None


class AuthError(ProviderError):
    """Client-credentials exchange failed or credentials are missing"""


class PayPalClient:
    """Async PayPal client owning its own access-token lifecycle"""

    ERROR_CODE_MESSAGES: Dict[str, str] = {
        "RESOURCE_NOT_FOUND": "PayPal subscription not found.",
        "INVALID_RESOURCE_ID": "PayPal subscription id is invalid.",
        "SUBSCRIPTION_STATUS_INVALID": "Subscription cannot be changed in its current status.",
        "UNPROCESSABLE_ENTITY": "PayPal rejected the requested operation.",
        "PERMISSION_DENIED": "PayPal API permission denied.",
        "invalid_client": "PayPal client credentials are invalid.",
        "RATE_LIMIT_REACHED": "Too many PayPal API calls, retry later.",
    }

    STATUS_MESSAGES: Dict[int, str] = {
        400: "PayPal API request is malformed.",
        401: "PayPal API authentication failed.",
        403: "PayPal API access denied.",
        404: "PayPal resource not found.",
        422: "PayPal could not process the request.",
        429: "PayPal API rate limit reached.",
        500: "PayPal API server error.",
        503: "PayPal API temporarily unavailable.",
    }

    RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}

    # refresh this long before PayPal's stated expiry
    TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 15.0,
        *,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ) -> None:
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.backoff_factor = max(0.0, float(backoff_factor))

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def get_access_token(self) -> str:
        """Client-credentials OAuth exchange, cached until near expiry"""

        if not self.client_id or not self.client_secret:
            raise AuthError("PayPal API credentials are not set", status_code=0, code="missing_credentials")

        now = datetime.now(timezone.utc)
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                    data={"grant_type": "client_credentials"},
                )
        except httpx.RequestError as exc:
            logger.error("[PAYPAL] token request network error: %s", exc)
            raise AuthError("Failed to reach PayPal for an access token", status_code=0, code="network_error") from exc

        if response.status_code != 200:
            payload = self._safe_json(response)
            logger.error("[PAYPAL] token request rejected: status=%s payload=%s", response.status_code, payload)
            raise AuthError(
                "Failed to get PayPal access token",
                response.status_code,
                payload,
            )

        data = self._safe_json(response)
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthError("PayPal token response carried no access_token", response.status_code, data)

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        self._access_token = token
        self._token_expires_at = now + timedelta(seconds=expires_in) - self.TOKEN_EXPIRY_MARGIN
        return token

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Authenticated request with retry on transient failures"""

        url = f"{self.base_url}{path}"

        for attempt in range(self.max_retries + 1):
            token = await self.get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, json=json)
            except httpx.RequestError as exc:
                logger.warning(
                    "[PAYPAL] API request network error: %s %s attempt=%s error=%s",
                    method,
                    path,
                    attempt + 1,
                    exc,
                )
                if attempt == self.max_retries:
                    raise ProviderError(
                        "PayPal API network error",
                        status_code=0,
                        payload={"message": str(exc)},
                        code="network_error",
                    ) from exc
                await self._sleep_backoff(attempt)
                continue

            if response.status_code == 401:
                self.invalidate_token()

            if response.status_code in self.RETRYABLE_STATUS and attempt < self.max_retries:
                logger.warning(
                    "[PAYPAL] API request retry: %s %s status=%s attempt=%s",
                    method,
                    path,
                    response.status_code,
                    attempt + 1,
                )
                await self._sleep_backoff(attempt)
                continue

            return response

        raise ProviderError("PayPal API request failed repeatedly", status_code=0)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._send(method, path, json=json)

        if response.status_code >= 400:
            payload = self._safe_json(response)
            message, code = self._resolve_error_message(payload, response.status_code)
            logger.error(
                "[PAYPAL] API request failed: %s %s status=%s code=%s payload=%s",
                method,
                path,
                response.status_code,
                code,
                payload,
            )
            raise ProviderError(message, response.status_code, payload, code=code)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as exc:
            logger.error("[PAYPAL] failed to parse API response: %s", exc)
            raise ProviderError(
                "PayPal API response could not be parsed",
                response.status_code,
                payload={"message": str(exc)},
                code="parse_error",
            ) from exc

    async def get_subscription_details(self, subscription_id: str) -> PayPalSubscriptionResource:
        """GET /v1/billing/subscriptions/{id}"""

        data = await self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")
        return PayPalSubscriptionResource.model_validate(data)

    async def get_subscription_status(
        self,
        subscription_id: str,
    ) -> Tuple[str, Optional[PayPalSubscriptionResource]]:
        """Live status; provider failures degrade to ``OTHER`` without details

        Credential failures still raise: they affect every request, not this
        subscription.
        """

        try:
            details = await self.get_subscription_details(subscription_id)
        except AuthError:
            raise
        except ProviderError as exc:
            logger.error("[PAYPAL] status check failed for %s: %s", subscription_id, exc)
            return UNKNOWN_PROVIDER_STATUS, None

        status = (details.status or UNKNOWN_PROVIDER_STATUS).upper()
        logger.info("[PAYPAL] subscription %s status=%s", subscription_id, status)
        return status, details

    async def cancel_subscription(self, subscription_id: str, reason: str) -> bool:
        """POST cancel; only 204 counts as success and nothing is raised"""

        try:
            response = await self._send(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/cancel",
                json={"reason": reason},
            )
        except ProviderError as exc:
            logger.error("[PAYPAL] cancel of %s failed: %s", subscription_id, exc)
            return False

        if response.status_code == 204:
            logger.info("[PAYPAL] canceled subscription %s", subscription_id)
            return True

        logger.error(
            "[PAYPAL] cancel of %s returned status=%s body=%s",
            subscription_id,
            response.status_code,
            response.text,
        )
        return False

    async def cancel_subscription_strict(self, subscription_id: str, reason: str) -> None:
        """User-initiated cancel: a 404 means already gone, other failures raise"""

        try:
            await self._request(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/cancel",
                json={"reason": reason},
            )
        except ProviderError as exc:
            if exc.status_code == 404:
                logger.warning("[PAYPAL] subscription %s not found at PayPal, treating as canceled", subscription_id)
                return
            raise

    async def verify_webhook_signature(self, verification: Dict[str, Any]) -> Dict[str, Any]:
        """POST /v1/notifications/verify-webhook-signature"""

        return await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json=verification,
        )

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = self.backoff_factor * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    def _resolve_error_message(self, payload: Dict[str, Any], status_code: int) -> tuple[str, Optional[str]]:
        """Pick a readable message from a PayPal error body"""

        code = payload.get("name") or payload.get("error") if isinstance(payload, dict) else None
        if isinstance(code, str) and code in self.ERROR_CODE_MESSAGES:
            return self.ERROR_CODE_MESSAGES[code], code

        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("error_description")
            if isinstance(message, str) and message.strip():
                return message, code if isinstance(code, str) else None

        status_message = self.STATUS_MESSAGES.get(status_code)
        if status_message:
            return status_message, None

        return "PayPal API request failed", None

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
            return payload if isinstance(payload, dict) else {"data": payload}
        except ValueError:
            return {"message": response.text}
