"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa Daraja Configuration
    mpesa_consumer_key: str = Field(..., description="Daraja app consumer key")
    mpesa_consumer_secret: str = Field(..., description="Daraja app consumer secret")
    mpesa_shortcode: str = Field(..., description="Business shortcode (PayBill or till)")
    mpesa_passkey: str = Field(..., description="Lipa na M-Pesa Online passkey")
    mpesa_base_url: str = Field(
        default="https://sandbox.safaricom.co.ke", description="Daraja API base URL"
    )
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_transaction_type: str = Field(
        default="CustomerPayBillOnline", description="STK push transaction type"
    )
    mpesa_timezone: str = Field(
        default="Africa/Nairobi", description="Timezone used for the STK password timestamp"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for token and STK push calls (seconds)"
    )
    token_expiry_margin_seconds: int = Field(
        default=60, description="Refresh the access token this long before it expires"
    )

    # Public URLs
    server_url: str = Field(..., description="Public base URL the gateway posts callbacks to")
    callback_path: str = Field(default="/daraja/stk-callback", description="Callback route path")
    frontend_url: str = Field(
        default="http://localhost:3000", description="Frontend base URL for QR payment links"
    )

    # Reconciliation
    legacy_correlation_lookup: bool = Field(
        default=True,
        description="Also search gateway_response.CheckoutRequestID when the canonical column misses",
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for the shared access-token cache"
    )

    # Application Configuration
    app_name: str = Field(default="merchant-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="Merchant API key header name")
    admin_api_key: Optional[str] = Field(
        default=None, description="Key required in X-Admin-Key for admin endpoints"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("mpesa_shortcode")
    @classmethod
    def validate_shortcode(cls, v: str) -> str:
        """Shortcodes are numeric."""
        v = v.strip()
        if not v.isdigit():
            raise ValueError("Invalid M-Pesa shortcode. Must contain digits only")
        return v

    @field_validator("mpesa_consumer_key", "mpesa_consumer_secret", "mpesa_passkey")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        """Strip stray whitespace and newlines copied from .env files."""
        return v.strip()

    @field_validator("mpesa_base_url", "server_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Remove trailing slashes so paths can be appended safely."""
        return v.strip().rstrip("/")

    @field_validator("mpesa_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate Daraja environment."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Invalid M-Pesa environment. Must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def callback_url(self) -> str:
        """Full URL the gateway posts STK results to."""
        return f"{self.server_url}{self.callback_path}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if talking to the Daraja sandbox."""
        return self.mpesa_environment == "sandbox"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
