"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Largest amount whose subunit count fits a signed 64-bit column.
MAX_STORABLE_AMOUNT = Decimal(2**63 - 1) / 100


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(
        default="sk_test_unset", description="Stripe secret API key (sk_test_...)"
    )
    stripe_webhook_secret: str = Field(
        default="whsec_unset", description="Stripe webhook signing secret"
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Max age of a signed webhook timestamp (seconds)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ledger.db", description="SQLAlchemy async database URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL for the webhook delivery cache"
    )
    webhook_cache_ttl: int = Field(
        default=86400 * 7, description="Webhook delivery cache TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="marketplace-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Ledger Policy
    supported_currencies: str = Field(
        default="RUB,USD", description="Accepted payment currencies (comma-separated)"
    )
    withdrawal_fee_rate: Decimal = Field(
        default=Decimal("0.02"), description="Withdrawal fee as a fraction of the gross amount"
    )
    withdrawal_min_fee: Decimal = Field(
        default=Decimal("50"), description="Flat minimum withdrawal fee"
    )
    min_withdrawal_amount: Decimal = Field(
        default=Decimal("1000"), description="Smallest gross amount a seller may withdraw"
    )
    max_amount: Decimal = Field(
        default=Decimal("1000000000"), description="Largest single amount accepted from a caller"
    )
    withdrawal_methods: str = Field(
        default="bank_card,bank_account,yoomoney",
        description="Accepted payout methods (comma-separated)",
    )

    # Gateway Retry Policy
    gateway_retry_attempts: int = Field(default=5, description="Max gateway call attempts")
    gateway_retry_max_wait: float = Field(
        default=16.0, description="Upper bound for retry backoff (seconds)"
    )

    # Reconciliation
    reconciliation_interval_seconds: int = Field(
        default=3600, description="Seconds between reconciliation passes"
    )
    reconciliation_lookback_hours: int = Field(
        default=24, description="How far back each reconciliation pass looks (hours)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a recognised prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("withdrawal_fee_rate")
    @classmethod
    def validate_fee_rate(cls, v: Decimal) -> Decimal:
        """Fee rate must be a fraction in [0, 1)."""
        if v < 0 or v >= 1:
            raise ValueError("withdrawal_fee_rate must be between 0 and 1")
        return v

    @field_validator("max_amount")
    @classmethod
    def validate_max_amount(cls, v: Decimal) -> Decimal:
        """Amounts are stored as 64-bit subunit counts."""
        if v <= 0 or v > MAX_STORABLE_AMOUNT:
            raise ValueError(f"max_amount must be between 0 and {MAX_STORABLE_AMOUNT}")
        return v

    def get_supported_currencies(self) -> List[str]:
        """Parse supported currencies from comma-separated string."""
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]

    def get_withdrawal_methods(self) -> List[str]:
        """Parse withdrawal methods from comma-separated string."""
        return [m.strip() for m in self.withdrawal_methods.split(",") if m.strip()]

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
