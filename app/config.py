"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

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

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )
    DEV_USER_ID: str = Field(default="dev-user-0001")

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication (tokens are issued by the auth service)
    JWT_SECRET: str = Field(default="change-this-secret-in-production-please")
    JWT_ALGORITHM: str = Field(default="HS256")

    # Google Play
    GOOGLE_PLAY_PACKAGE_NAME: str = Field(default="com.rezepta.app")
    GOOGLE_PLAY_SERVICE_ACCOUNT_FILE: Optional[str] = Field(default=None)
    GOOGLE_PLAY_API_BASE_URL: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3"
    )

    # App Store
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_VERIFY_RECEIPT_URL: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt"
    )
    APPLE_SANDBOX_VERIFY_RECEIPT_URL: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # Store API calls
    STORE_HTTP_TIMEOUT_SECONDS: float = Field(default=10.0)
    STORE_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    STORE_RETRY_BACKOFF_SECONDS: float = Field(default=0.5, ge=0)
    STORE_RETRY_BACKOFF_MAX_SECONDS: float = Field(default=4.0, ge=0)

    # Webhooks
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = Field(default=86400 * 7)
    PENDING_NOTIFICATION_TTL_MINUTES: int = Field(default=60)

    # Optimistic concurrency
    RECONCILE_MAX_RETRIES: int = Field(default=3, ge=1)

    # App Configuration
    API_BASE_URL: str = Field(default="http://localhost:8000")
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
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

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
