"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2025-02-24.acacia", description="Stripe API version")
    stripe_timeout_seconds: float = Field(
        default=15.0, description="Caller-visible timeout for a single Stripe call (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Per-seller lock timeout (seconds)")
    lock_backend: str = Field(
        default="local", description="Per-seller lock backend (local/redis)"
    )
    webhook_dedup_enabled: bool = Field(
        default=True, description="Deduplicate webhook event ids in Redis"
    )

    # Application Configuration
    app_name: str = Field(default="deferred-payouts", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    base_url: str = Field(
        default="http://localhost:3000", description="Public base URL for redirect links"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Marketplace policy
    platform_fee_bp: int = Field(
        default=1000, description="Platform fee in basis points (1000 = 10%)"
    )
    notification_threshold: int = Field(
        default=3, description="Held sales before the seller is asked to finish onboarding"
    )
    settlement_currency: str = Field(default="usd", description="Currency for sales and transfers")
    default_country: str = Field(default="US", description="Country used when a seller has none")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate Stripe secret key format."""
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

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        """Validate lock backend."""
        if v.lower() not in ("local", "redis"):
            raise ValueError("Lock backend must be 'local' or 'redis'")
        return v.lower()

    @field_validator("platform_fee_bp")
    @classmethod
    def validate_platform_fee(cls, v: int) -> int:
        """Fee must be between 0 and 100 percent."""
        if not 0 <= v <= 10000:
            raise ValueError("Platform fee must be between 0 and 10000 basis points")
        return v

    @field_validator("notification_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        """Threshold must be positive."""
        if v < 1:
            raise ValueError("Notification threshold must be at least 1")
        return v

    @field_validator("settlement_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Stripe expects lowercase three-letter codes."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def uses_sqlite(self) -> bool:
        """SQLite engines do not accept pool sizing options."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
