from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

BILLING_SCOPES = ("account", "workspace")


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    """Credentials for a single payment provider."""

    provider: str
    secret_key: str
    webhook_secret: str
    public_key: Optional[str] = None
    api_version: Optional[str] = None


class Settings(BaseSettings):
    """
    Main configuration for Paygate.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Paygate"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: str = ""
    ALLOW_TEST_DATABASE_URL: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Tenant isolation. Writes to tenant tables outside tenant_scope() are refused.
    ENFORCE_TENANT_SCOPE: bool = True
    ENFORCE_TENANT_SCOPE_IN_TESTS: bool = False

    # Queue broker (Celery)
    REDIS_URL: Optional[str] = None
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: Optional[str] = "6379"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLIC_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None

    # Billing surface
    BILLING_SCOPE: str = "account"  # account | workspace
    FRONTEND_URL: str = "http://localhost:3000"
    CHECKOUT_SUCCESS_URL: Optional[str] = None
    CHECKOUT_CANCEL_URL: Optional[str] = None

    # Dunning
    DUNNING_GRACE_PERIOD_DAYS: int = 7
    DUNNING_MAX_RETRIES: int = 3
    DUNNING_SWEEP_INTERVAL_MINUTES: int = 60

    # Webhook processing
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_RETRY_BACKOFF_MAX_SECONDS: int = 600

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self.BILLING_SCOPE = str(self.BILLING_SCOPE or "account").strip().lower()
        if self.BILLING_SCOPE not in BILLING_SCOPES:
            raise ValueError("BILLING_SCOPE must be one of: account, workspace")

        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_billing_config()
        self._validate_dunning_config()
        return self

    def _validate_database_config(self) -> None:
        """Validates database and redis connectivity settings."""
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

        # Redis URL construction fallback
        if not self.REDIS_URL and self.REDIS_HOST and self.REDIS_PORT:
            self.REDIS_URL = f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_billing_config(self) -> None:
        """Validates gateway credentials."""
        if not self.is_production:
            return
        if not self.STRIPE_SECRET_KEY or self.STRIPE_SECRET_KEY.startswith("sk_test"):
            raise ValueError(
                "STRIPE_SECRET_KEY must be a live key (sk_live_...) in production."
            )
        if not self.STRIPE_WEBHOOK_SECRET:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production.")

    def _validate_dunning_config(self) -> None:
        if self.DUNNING_GRACE_PERIOD_DAYS < 1:
            raise ValueError("DUNNING_GRACE_PERIOD_DAYS must be >= 1.")
        if self.DUNNING_MAX_RETRIES < 1:
            raise ValueError("DUNNING_MAX_RETRIES must be >= 1.")
        if self.DUNNING_SWEEP_INTERVAL_MINUTES < 1:
            raise ValueError("DUNNING_SWEEP_INTERVAL_MINUTES must be >= 1.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION

    @property
    def checkout_success_url(self) -> str:
        return (
            self.CHECKOUT_SUCCESS_URL
            or f"{self.FRONTEND_URL.rstrip('/')}/settings/billing?success=true"
        )

    @property
    def checkout_cancel_url(self) -> str:
        return (
            self.CHECKOUT_CANCEL_URL
            or f"{self.FRONTEND_URL.rstrip('/')}/settings/billing?canceled=true"
        )

    @property
    def billing_portal_return_url(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}/settings/billing"

    def get_gateway_config(self, provider: str) -> GatewayConfig:
        """
        Resolve credentials for a provider from `<PROVIDER>_*` settings.

        Raises ConfigurationError when the secret key or webhook secret is missing.
        """
        from paygate.shared.core.exceptions import ConfigurationError

        prefix = str(provider).upper()
        secret_key = getattr(self, f"{prefix}_SECRET_KEY", None)
        if not secret_key:
            raise ConfigurationError(
                f"{prefix}_SECRET_KEY is required for {provider} billing functionality"
            )
        webhook_secret = getattr(self, f"{prefix}_WEBHOOK_SECRET", None)
        if not webhook_secret:
            raise ConfigurationError(
                f"{prefix}_WEBHOOK_SECRET is required for {provider} webhook verification"
            )
        return GatewayConfig(
            provider=str(provider),
            secret_key=secret_key,
            webhook_secret=webhook_secret,
            public_key=getattr(self, f"{prefix}_PUBLIC_KEY", None),
            api_version=getattr(self, f"{prefix}_API_VERSION", None),
        )
