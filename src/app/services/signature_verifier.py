"""
PayPal webhook signature verification

PayPal signs webhooks with a certificate chain; the verdict is delegated to
PayPal's verify-webhook-signature endpoint rather than checked locally.
"""
import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

from services.paypal_client import PayPalClient

logger = logging.getLogger(__name__)

TRANSMISSION_ID = "paypal-transmission-id"
TRANSMISSION_TIME = "paypal-transmission-time"
CERT_URL = "paypal-cert-url"
AUTH_ALGO = "paypal-auth-algo"
TRANSMISSION_SIG = "paypal-transmission-sig"

SIGNATURE_HEADERS = (TRANSMISSION_ID, TRANSMISSION_TIME, CERT_URL, AUTH_ALGO, TRANSMISSION_SIG)
CRITICAL_HEADERS = (TRANSMISSION_ID, TRANSMISSION_TIME, TRANSMISSION_SIG)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def normalize_webhook_id(webhook_id: str) -> str:
    """Drop whitespace and anything else a copy/paste may have added"""
    return _NON_ALNUM.sub("", webhook_id)


def _header_lookup(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(key).lower(): value for key, value in headers.items()}


def _find_header(lookup: Dict[str, str], name: str) -> Optional[str]:
    # proxies sometimes rewrite dashes or add a CGI-style prefix
    underscored = name.replace("-", "_")
    for candidate in (name, underscored, f"http_{underscored}"):
        value = lookup.get(candidate)
        if value:
            return value
    return None


class WebhookSignatureVerifier:
    """Fail-closed verifier with an explicit skip escape hatch"""

    def __init__(
        self,
        paypal_client: PayPalClient,
        webhook_id: Optional[str],
        *,
        skip_verification: bool = False,
    ) -> None:
        self.paypal_client = paypal_client
        self.webhook_id = webhook_id or ""
        self.skip_verification = skip_verification

    def extract_headers(self, headers: Mapping[str, str]) -> Dict[str, Optional[str]]:
        lookup = _header_lookup(headers)
        return {name: _find_header(lookup, name) for name in SIGNATURE_HEADERS}

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_id.strip():
            logger.warning("[PAYPAL] PAYPAL_WEBHOOK_ID not set, signature verification disabled")
            return True

        webhook_id = normalize_webhook_id(self.webhook_id)
        found = self.extract_headers(headers)
        logger.info(
            "[PAYPAL] signature headers present: %s",
            {name: bool(value) for name, value in found.items()},
        )

        missing = [name for name in CRITICAL_HEADERS if not found[name]]
        if missing:
            if self.skip_verification:
                logger.warning(
                    "[PAYPAL] signature headers missing %s; accepting because PAYPAL_SKIP_SIGNATURE_VERIFY is set",
                    missing,
                )
                return True
            logger.warning("[PAYPAL] signature headers missing: %s", missing)
            return False

        try:
            event: Any = json.loads(raw_body)
            verification = {
                "transmission_id": found[TRANSMISSION_ID],
                "transmission_time": found[TRANSMISSION_TIME],
                "cert_url": found[CERT_URL],
                "auth_algo": found[AUTH_ALGO],
                "transmission_sig": found[TRANSMISSION_SIG],
                "webhook_id": webhook_id,
                "webhook_event": event,
            }
            result = await self.paypal_client.verify_webhook_signature(verification)
        except Exception as exc:
            logger.error("[PAYPAL] signature verification error: %s", exc)
            return False

        status = result.get("verification_status") if isinstance(result, dict) else None
        if status == "SUCCESS":
            logger.info("[PAYPAL] webhook signature verified")
            return True

        logger.warning("[PAYPAL] webhook signature rejected: verification_status=%s", status)
        return False
