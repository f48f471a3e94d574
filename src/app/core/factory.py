"""
Service factory: builds and caches the reconciliation object graph
"""
from typing import Optional
from supabase import create_client
import logging

from core.config import settings
from database_helper import DatabaseHelper
from services.auth_service import AuthService
from services.paypal_client import PayPalClient
from services.reconciliation_service import SubscriptionReconciler
from services.signature_verifier import WebhookSignatureVerifier

logger = logging.getLogger(__name__)


class ServiceFactory:
    """Singletons created on first use"""

    _db_helper: Optional[DatabaseHelper] = None
    _paypal_client: Optional[PayPalClient] = None
    _signature_verifier: Optional[WebhookSignatureVerifier] = None
    _reconciler: Optional[SubscriptionReconciler] = None
    _auth_service: Optional[AuthService] = None

    @classmethod
    def configure_dependencies(cls) -> None:
        supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        cls._db_helper = DatabaseHelper(supabase_client)
        cls._auth_service = AuthService(supabase_client)

        if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_SECRET_KEY:
            logger.warning("[PAYPAL] PAYPAL_CLIENT_ID/PAYPAL_SECRET_KEY not set; PayPal calls will fail")
        cls._paypal_client = PayPalClient(
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_SECRET_KEY,
            base_url=settings.PAYPAL_API_URL,
            timeout=settings.PAYPAL_TIMEOUT_SECONDS,
        )

        cls._signature_verifier = WebhookSignatureVerifier(
            cls._paypal_client,
            settings.PAYPAL_WEBHOOK_ID,
            skip_verification=settings.PAYPAL_SKIP_SIGNATURE_VERIFY,
        )
        cls._reconciler = SubscriptionReconciler(
            store=cls._db_helper,
            directory=cls._db_helper,
            paypal_client=cls._paypal_client,
            plan_ids=settings.plan_id_table(),
        )
        logger.info("Service graph configured (paypal=%s)", settings.PAYPAL_API_URL)

    @classmethod
    def _ensure_configured(cls) -> None:
        if cls._reconciler is None:
            cls.configure_dependencies()

    @classmethod
    def get_db_helper(cls) -> DatabaseHelper:
        cls._ensure_configured()
        return cls._db_helper

    @classmethod
    def get_paypal_client(cls) -> PayPalClient:
        cls._ensure_configured()
        return cls._paypal_client

    @classmethod
    def get_signature_verifier(cls) -> WebhookSignatureVerifier:
        cls._ensure_configured()
        return cls._signature_verifier

    @classmethod
    def get_reconciler(cls) -> SubscriptionReconciler:
        cls._ensure_configured()
        return cls._reconciler

    @classmethod
    def get_auth_service(cls) -> AuthService:
        cls._ensure_configured()
        return cls._auth_service

    @staticmethod
    def get_admin_token() -> Optional[str]:
        return settings.ADMIN_API_TOKEN
