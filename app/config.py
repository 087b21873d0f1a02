"""
Application Configuration
=========================

Settings for the billing service, loaded from the environment (and .env
locally) through pydantic-settings. Provider secrets default to empty so
tests and local runs start without them; the webhook verifier rejects
every delivery until its secret is set.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_LOCK_TIMEOUT_MS: int = Field(
        default=5000,
        description="Upper bound on waiting for a per-user reconciliation lock",
    )

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication (tokens are issued by the account service)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")

    # Service-to-service key for admin and scheduler endpoints
    SERVICE_API_KEY: str = Field(default="")

    # Stripe
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = Field(default=300)
    STRIPE_PRICE_ID_MONTHLY: str = Field(default="")
    STRIPE_PRICE_ID_YEARLY: str = Field(default="")

    # Apple In-App Purchase
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_BUNDLE_ID: str = Field(default="")
    APPLE_VERIFY_TIMEOUT_SECONDS: float = Field(default=10.0)
    APPLE_PRODUCT_ID_MONTHLY: str = Field(default="premium_monthly")
    APPLE_PRODUCT_ID_YEARLY: str = Field(default="premium_yearly")
    # App Store Server Notifications V2
    APPLE_ENVIRONMENT: str = Field(default="Sandbox", description="Sandbox or Production")
    APPLE_APP_APPLE_ID: Optional[int] = Field(default=None, description="Required in Production")
    APPLE_ROOT_CERT_PATHS: str = Field(
        default="",
        description="Comma separated DER files of the Apple root certificates",
    )
    APPLE_NOTIFICATION_ONLINE_CHECKS: bool = Field(default=True)

    # Pricing
    MONTHLY_PRICE: Decimal = Field(default=Decimal("4.99"))
    YEARLY_PRICE: Decimal = Field(default=Decimal("39.00"))
    CURRENCY: str = Field(default="usd")

    # Entitlement policy
    FREE_TIER_ITEM_LIMIT: int = Field(default=5)
    PAYMENT_GRACE_DAYS: int = Field(
        default=0,
        description="Days past period end a failed payment keeps premium",
    )
    SWEEP_ACTIVE_LEEWAY_HOURS: int = Field(
        default=24,
        description="Hours an active record may run past period end before the sweep expires it",
    )
    REFUND_WINDOW_DAYS: int = Field(default=7)
    ENTITLEMENT_CACHE_TTL_SECONDS: int = Field(default=60)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def stripe_price_ids(self) -> dict[str, str]:
        """Stripe price id per billing cycle."""
        return {
            "monthly": self.STRIPE_PRICE_ID_MONTHLY,
            "yearly": self.STRIPE_PRICE_ID_YEARLY,
        }

    @property
    def apple_product_cycles(self) -> dict[str, str]:
        """Billing cycle per App Store product id."""
        return {
            self.APPLE_PRODUCT_ID_MONTHLY: "monthly",
            self.APPLE_PRODUCT_ID_YEARLY: "yearly",
        }

    @property
    def apple_root_cert_paths(self) -> List[str]:
        """Parse APPLE_ROOT_CERT_PATHS into a list."""
        return [path.strip() for path in self.APPLE_ROOT_CERT_PATHS.split(",") if path.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
