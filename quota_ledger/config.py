"""
Configuration management for the Quota & Subscription Ledger.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from decimal import Decimal
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuotaConfig(BaseSettings):
    """Free-tier daily limits and calendar-day boundaries."""

    model_config = SettingsConfigDict(
        env_prefix="QUOTA_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    free_daily_create_limit: int = Field(default=3, ge=0)
    free_daily_reuse_limit: int = Field(default=1, ge=0)
    free_daily_export_limit: int = Field(default=10, ge=0)
    free_daily_graph_nodes_limit: int = Field(default=50, ge=0)

    # Daily counters are keyed on the calendar day in this timezone
    billing_timezone: str = Field(
        default="Asia/Shanghai",
        description="IANA timezone used to derive the calendar day for daily counters",
    )

    @field_validator("billing_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.billing_timezone)


class PlanConfig(BaseSettings):
    """
    Plan catalog values for paid tiers.

    The catalog itself is administered elsewhere; these are the values the
    ledger reads when provisioning.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLAN_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    basic_monthly_quota: int = Field(default=100, ge=1)
    pro_monthly_quota: int = Field(default=300, ge=1)
    admin_monthly_quota: int = Field(default=100_000, ge=1)

    basic_price: Decimal = Field(default=Decimal("9.90"), gt=0)
    pro_price: Decimal = Field(default=Decimal("15.00"), gt=0)

    default_paid_tier: Literal["basic", "pro"] = Field(default="pro")
    period_days: int = Field(default=30, ge=1, le=366, description="Billing period length")
    grace_period_days: int = Field(
        default=3, ge=0, le=30, description="Retry window after a failed renewal charge"
    )


class PaymentConfig(BaseSettings):
    """Payment order and provider selection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    provider: Literal["sandbox", "live"] = Field(
        default="sandbox",
        description="Payment provider client selected at startup (sandbox for dev/test)",
    )
    order_id_prefix: str = Field(
        default="INSPI",
        min_length=1,
        max_length=12,
        description="Human-legible order id prefix used by support tooling",
    )
    currency: str = Field(default="CNY", min_length=3, max_length=3)
    order_ttl_minutes: int = Field(
        default=30, ge=1, le=24 * 60, description="Presentment (QR code) lifetime"
    )
    provider_timeout_seconds: float = Field(
        default=5.0, gt=0.0, le=30.0, description="Hard timeout for provider calls"
    )

    # Sandbox provider
    sandbox_base_url: str = Field(default="https://pay.sandbox.inspi.local")
    callback_secret: str | None = Field(
        default=None,
        description="HMAC secret used to authenticate sandbox callbacks",
    )

    @field_validator("order_id_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v.isalnum():
            raise ValueError("order_id_prefix must be alphanumeric")
        return v.upper()


class StripeConfig(BaseSettings):
    """Stripe Checkout configuration for the live provider."""

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_live_/sk_test_)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_)")
    success_url: str = Field(default="https://inspi.ai/subscription?paid=1")
    cancel_url: str = Field(default="https://inspi.ai/subscription?cancelled=1")
    payment_method_types: str = Field(
        default="card",
        description="Comma-separated Stripe payment method types for Checkout",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.webhook_secret)

    @property
    def payment_method_list(self) -> list[str]:
        return [m.strip() for m in self.payment_method_types.split(",") if m.strip()]


class StorageConfig(BaseSettings):
    """Ledger database configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = Field(default="./data/ledger.db")
    busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="How long a writer waits for the database lock before failing",
    )


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    service_name: str = Field(default="quota-ledger", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the ledger service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    plans: PlanConfig = Field(default_factory=PlanConfig)
    payment: PaymentConfig = Field(default_factory=PaymentConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Protects the comp/trial provisioning endpoint
    admin_api_key: str | None = Field(
        default=None,
        description="API key for admin endpoints (required for admin access)"
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """Reject obvious placeholder admin keys; never echo the key itself."""
        if not v:
            return None

        placeholder_patterns = ["your-api-key-here", "example", "dummy", "changeme"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if self.payment.provider == "live" and not self.stripe.is_configured:
            logging.warning(
                "PAYMENT_PROVIDER=live but Stripe keys are missing - order creation will fail"
            )

        if self.payment.provider == "sandbox":
            if self.logging.environment == "production":
                logging.warning("Sandbox payment provider selected in production environment")
            if not self.payment.callback_secret:
                logging.warning(
                    "PAYMENT_CALLBACK_SECRET not set - sandbox callbacks are accepted unsigned"
                )

        if self.plans.pro_monthly_quota < self.plans.basic_monthly_quota:
            logging.warning(
                f"pro_monthly_quota ({self.plans.pro_monthly_quota}) is below "
                f"basic_monthly_quota ({self.plans.basic_monthly_quota})"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
