"""
Application settings
"""
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.plan_config import PlanIdTable


_FILE_PATH = Path(__file__).resolve()


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """Collect .env candidates, nearest directory first"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()


class Settings(BaseSettings):
    """Service settings"""

    model_config = SettingsConfigDict(
        env_file=tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None,
        case_sensitive=True,
        extra="allow",
    )

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Supabase (service role; the webhook writes on behalf of any user)
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str

    # PayPal
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_SECRET_KEY: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAYPAL_SKIP_SIGNATURE_VERIFY: bool = False
    PAYPAL_TIMEOUT_SECONDS: float = 15.0

    # PayPal plan ids per tier and billing period
    PAYPAL_BRONZE_MONTHLY_PLAN_ID: Optional[str] = None
    PAYPAL_BRONZE_YEARLY_PLAN_ID: Optional[str] = None
    PAYPAL_GOLD_MONTHLY_PLAN_ID: Optional[str] = None
    PAYPAL_GOLD_YEARLY_PLAN_ID: Optional[str] = None
    PAYPAL_DIAMOND_MONTHLY_PLAN_ID: Optional[str] = None
    PAYPAL_DIAMOND_YEARLY_PLAN_ID: Optional[str] = None
    PAYPAL_RESUME_BASIC_PLAN_ID: Optional[str] = None
    PAYPAL_RESUME_PREMIUM_PLAN_ID: Optional[str] = None

    # Maintenance endpoints and background sweep
    ADMIN_API_TOKEN: Optional[str] = None
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError("SUPABASE_URL is required")
        return v

    @field_validator("SUPABASE_SERVICE_ROLE_KEY")
    @classmethod
    def validate_service_role_key(cls, v):
        if not v:
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY is required")
        return v

    def plan_id_table(self) -> PlanIdTable:
        """Plan-id table consumed by the subscription resolver"""
        return PlanIdTable(
            bronze_monthly=self.PAYPAL_BRONZE_MONTHLY_PLAN_ID,
            bronze_yearly=self.PAYPAL_BRONZE_YEARLY_PLAN_ID,
            gold_monthly=self.PAYPAL_GOLD_MONTHLY_PLAN_ID,
            gold_yearly=self.PAYPAL_GOLD_YEARLY_PLAN_ID,
            diamond_monthly=self.PAYPAL_DIAMOND_MONTHLY_PLAN_ID,
            diamond_yearly=self.PAYPAL_DIAMOND_YEARLY_PLAN_ID,
            resume_basic=self.PAYPAL_RESUME_BASIC_PLAN_ID,
            resume_premium=self.PAYPAL_RESUME_PREMIUM_PLAN_ID,
        )


settings = Settings()
