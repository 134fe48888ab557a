"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import structlog

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = "development"
    debug: bool = False  # Secure by default - enable explicitly for development
    log_level: str = "INFO"
    json_logs: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    app_version: str = "0.1.0"

    # Security
    api_key: Optional[str] = None  # Shared secret for /api/* (X-API-Key header)
    cors_origins: str = "http://localhost:3000"

    # Database
    database_url: str = "sqlite:///./data/labsync.db"

    # Google Calendar
    google_calendar_id: str = "primary"
    google_calendar_timezone: str = "America/Chicago"
    google_api_key: Optional[str] = None  # Read-only access
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None
    google_access_token: Optional[str] = None
    google_webhook_token: Optional[str] = None  # Expected X-Goog-Channel-Token
    google_request_timeout: float = 30.0
    google_retry_attempts: int = 3
    google_retry_base_delay: float = 1.0

    # Sync
    sync_enabled: bool = True
    sync_interval_minutes: int = 5
    sync_push_batch_size: int = 50
    sync_pull_days_back: int = 7
    sync_pull_days_forward: int = 30
    webhook_lookback_minutes: int = 60
    manual_sync_days_back: int = 7

    def __init__(self, **kwargs):
        """Initialize settings with security validation."""
        super().__init__(**kwargs)

        # Only validate in production environment
        if self.app_env == "production":
            if not self.api_key or len(self.api_key) < 32:
                raise ValueError(
                    "API_KEY must be set to a secure value (minimum 32 characters). "
                    "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )
            if not self.google_webhook_token:
                raise ValueError(
                    "GOOGLE_WEBHOOK_TOKEN must be set in production so push notifications can be verified."
                )
        else:
            # Development mode - warn if using weak secrets
            if not self.api_key:
                logger.warning("missing_api_key",
                             message="API_KEY not set, /api routes are open. OK for dev, but required for production!")
            if not self.google_webhook_token:
                logger.warning("missing_google_webhook_token",
                             message="GOOGLE_WEBHOOK_TOKEN not set, webhook calls are not verified.")

    @property
    def google_configured(self) -> bool:
        """True when any Google Calendar credential is present."""
        return bool(
            self.google_access_token
            or self.google_api_key
            or (self.google_client_id and self.google_client_secret and self.google_refresh_token)
        )


# Global settings instance
settings = Settings()
