"""Application settings using Pydantic for environment-based configuration."""
import string
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Secrets (loaded once at startup, never logged)
    encryption_key: SecretStr = Field(
        ..., description="AES-256 vault key as 64 hexadecimal characters"
    )
    webhook_secret: SecretStr = Field(..., description="Shared payment webhook signing secret")
    stripe_secret_key: Optional[SecretStr] = Field(
        default=None, description="Stripe secret API key (sk_test_... or sk_live_...)"
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payment_guard.db",
        description="SQLAlchemy async connection URL",
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    velocity_window_seconds: int = Field(
        default=3600, description="Sliding window for recent transaction counts"
    )
    velocity_enabled: bool = Field(
        default=True, description="Count recent payments in Redis for risk scoring"
    )

    # Application Configuration
    app_name: str = Field(default="payment-guard", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    api_host: str = Field(default="0.0.0.0", description="Webhook API bind host")
    api_port: int = Field(default=8000, description="Webhook API bind port")
    log_level: str = Field(default="INFO", description="Logging level")
    risk_timezone: str = Field(
        default="America/Sao_Paulo", description="Timezone used to derive the hour of day"
    )

    # Risk scoring
    risk_high_amount_threshold: Decimal = Field(
        default=Decimal("1000"), description="Amounts above this are high value"
    )
    risk_normal_hour_start: int = Field(default=6, ge=0, le=23)
    risk_normal_hour_end: int = Field(default=23, ge=0, le=23)
    risk_velocity_threshold: int = Field(
        default=5, description="Recent transaction count above which velocity is high"
    )
    risk_high_amount_points: int = Field(default=20)
    risk_unusual_hour_points: int = Field(default=15)
    risk_high_frequency_points: int = Field(default=25)
    risk_card_payment_points: int = Field(default=10)
    risk_high_level_score: int = Field(default=40)
    risk_medium_level_score: int = Field(default=20)

    # PII masking
    mask_char: str = Field(default="*", min_length=1, max_length=1)
    mask_run_length: int = Field(default=3, ge=1)
    mask_phone_area_digits: int = Field(default=2, ge=0)
    mask_card_visible_digits: int = Field(default=4, ge=0)

    # Webhooks
    webhook_tolerance_seconds: int = Field(
        default=300, description="Accepted clock skew for webhook timestamps"
    )

    # Gateway
    gateway_timeout_seconds: float = Field(
        default=15.0, description="Timeout applied to every gateway call"
    )

    # Offline payment code (Pix)
    pix_payee_key: str = Field(default="", description="Pix key of the merchant")
    pix_payee_name: str = Field(default="", description="Merchant name (25 chars max)")
    pix_payee_city: str = Field(default="", description="Merchant city (15 chars max)")

    # Reconciliation worker
    reconciliation_interval_seconds: int = Field(default=300)
    reconciliation_grace_seconds: int = Field(
        default=900, description="Minimum age of a PENDING payment before it is re-queried"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: SecretStr) -> SecretStr:
        """Validate that the vault key is 256 bits of hex."""
        raw = v.get_secret_value()
        if len(raw) != 64 or any(c not in string.hexdigits for c in raw):
            raise ValueError("Encryption key must be exactly 64 hexadecimal characters")
        return v

    @field_validator("webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: SecretStr) -> SecretStr:
        """Reject an empty webhook secret."""
        if not v.get_secret_value():
            raise ValueError("Webhook secret must not be empty")
        return v

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        """Validate the Stripe secret key prefix."""
        if v is None:
            return v
        raw = v.get_secret_value()
        if not raw.startswith("sk_test_") and not raw.startswith("sk_live_"):
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

    @property
    def encryption_key_bytes(self) -> bytes:
        """Vault key decoded to raw bytes."""
        return bytes.fromhex(self.encryption_key.get_secret_value())

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once per process.
    """
    return Settings()
