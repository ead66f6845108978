"""Application configuration"""

from typing import Dict, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    WHY: Frozen so the object built at startup can be handed to every
    component as read-only configuration. Secrets are SecretStr so they
    never show up in reprs or log lines.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # API
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Billing Sync API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # "console" or "json"

    # Database
    DATABASE_URL: str

    # URLs
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: SecretStr
    STRIPE_WEBHOOK_SECRET: SecretStr
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Stripe price ids per plan
    # WHY: Plan changes made in the Customer Portal only carry a price id
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_YEARLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_YEARLY: Optional[str] = None

    # Webhook processing
    WEBHOOK_VERIFY_TIMEOUT_SECONDS: float = 2.0
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 10.0

    # Processed event retention
    PROCESSED_EVENT_RETENTION_DAYS: int = 30
    PROCESSED_EVENT_PURGE_INTERVAL_SECONDS: int = 3600
    SCHEDULER_ENABLED: bool = True

    # Email
    RESEND_API_KEY: Optional[SecretStr] = None
    EMAIL_FROM_ADDRESS: str = "billing@localhost"
    EMAIL_FROM_NAME: str = "Billing"
    EMAIL_SEND_TIMEOUT_SECONDS: float = 5.0

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    @property
    def price_plan_map(self) -> Dict[str, str]:
        """
        Map configured Stripe price ids to plan values.

        Returns:
            Dict of price id -> plan value ("pro", "enterprise")
        """
        pairs = {
            self.STRIPE_PRICE_PRO_MONTHLY: "pro",
            self.STRIPE_PRICE_PRO_YEARLY: "pro",
            self.STRIPE_PRICE_ENTERPRISE_MONTHLY: "enterprise",
            self.STRIPE_PRICE_ENTERPRISE_YEARLY: "enterprise",
        }
        return {price_id: plan for price_id, plan in pairs.items() if price_id}


settings = Settings()
