"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_URL = "https://api.safaricom.co.ke"

# Published Safaricom callback origins
DEFAULT_MPESA_CALLBACK_IPS = ",".join(
    [
        "196.201.214.200",
        "196.201.214.206",
        "196.201.213.114",
        "196.201.214.207",
        "196.201.214.208",
        "196.201.213.44",
        "196.201.212.127",
        "196.201.212.138",
        "196.201.212.129",
        "196.201.212.136",
        "196.201.212.74",
    ]
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    frontend_url: str = Field(
        default="http://localhost:5173", description="Frontend base URL for checkout return"
    )

    # M-Pesa Configuration
    mpesa_consumer_key: str = Field(default="", description="Daraja consumer key")
    mpesa_consumer_secret: str = Field(default="", description="Daraja consumer secret")
    mpesa_business_short_code: str = Field(default="174379", description="Paybill short code")
    mpesa_passkey: str = Field(default="", description="STK Push passkey")
    mpesa_callback_url: str = Field(default="", description="Public STK callback URL")
    mpesa_env: str = Field(default="sandbox", description="sandbox or production")
    mpesa_token_safety_margin_seconds: int = Field(
        default=99, description="Seconds shaved off the advertised token lifetime"
    )
    mpesa_min_amount: int = Field(default=1, description="Minimum STK amount (KES)")
    mpesa_max_amount: int = Field(default=150000, description="Maximum STK amount (KES)")
    mpesa_callback_ips: str = Field(
        default=DEFAULT_MPESA_CALLBACK_IPS,
        description="Allowed callback source IPs (comma-separated)",
    )

    # Outbound provider calls
    provider_timeout_seconds: float = Field(
        default=30.0, description="Timeout for every outbound provider call"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Notifications
    notifications_enabled: bool = Field(default=True, description="Send confirmation emails")
    smtp_host: str = Field(default="smtp.gmail.com", description="SMTP host")
    smtp_port: int = Field(default=587, description="SMTP port (STARTTLS)")
    smtp_user: str = Field(default="", description="SMTP username")
    smtp_password: str = Field(default="", description="SMTP password")
    smtp_from: str = Field(default="", description="Sender address (defaults to smtp_user)")
    event_name: str = Field(default="Event", description="Event name used in emails")

    # Application Configuration
    app_name: str = Field(default="ticket-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=4242, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:5173",
        description="CORS allowed origins (comma-separated)"
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(default=10, description="Initiations per caller per window")
    rate_limit_window_seconds: float = Field(default=60.0, description="Sliding window length")

    # Reporting
    stale_pending_minutes: int = Field(
        default=5, description="Age after which a pending transaction is reported stale"
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
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
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

    @field_validator("mpesa_env")
    @classmethod
    def validate_mpesa_env(cls, v: str) -> str:
        """Validate M-Pesa environment."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("mpesa_env must be 'sandbox' or 'production'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_mpesa_callback_ips(self) -> List[str]:
        """Parse the callback allow-list."""
        return [ip.strip() for ip in self.mpesa_callback_ips.split(",") if ip.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def mpesa_base_url(self) -> str:
        """Daraja base URL for the configured environment."""
        if self.mpesa_env == "production":
            return MPESA_PRODUCTION_URL
        return MPESA_SANDBOX_URL

    @property
    def mpesa_ip_check_enabled(self) -> bool:
        """Callback IP verification only runs against the production Daraja."""
        return self.mpesa_env == "production"

    @property
    def sender_address(self) -> str:
        return self.smtp_from or self.smtp_user


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
