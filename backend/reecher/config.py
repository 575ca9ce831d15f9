"""
Configuration settings for the Reecher backend
"""
import logging
from pydantic_settings import BaseSettings
from typing import List

_config_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings"""

    # Partner gateway
    WHAPI_GATE_URL: str = "https://gate.whapi.cloud"
    WHAPI_MANAGER_URL: str = "https://manager.whapi.cloud"
    WHAPI_PARTNER_TOKEN: str
    WHAPI_PROJECT_ID: str
    WHAPI_TIMEOUT_SECONDS: float = 30.0

    # Storage: "postgres" in deployments, "memory" for local runs
    STORE_BACKEND: str = "postgres"
    DATABASE_URL: str = ""

    # Auth (tokens are issued by the external auth provider)
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    INTERNAL_API_SECRET: str = ""  # defaults to JWT_SECRET if empty

    # Encryption of channel tokens at rest
    ENCRYPTION_KEY: str

    # Readiness polling
    READY_POLL_MAX_ATTEMPTS: int = 24
    READY_POLL_BASE_SECONDS: float = 2.0
    READY_POLL_FACTOR: float = 1.5
    READY_POLL_CAP_SECONDS: float = 15.0

    # Collection phase
    COLLECTION_BATCH_SIZE: int = 150
    COLLECTION_MAX_API_CALLS: int = 50
    COLLECTION_DELAY_BASE_SECONDS: float = 3.0
    COLLECTION_DELAY_STEP_SECONDS: float = 0.2
    COLLECTION_DELAY_CEILING_SECONDS: float = 6.0
    RATE_LIMIT_BACKOFF_BASE_SECONDS: float = 8.0
    RATE_LIMIT_BACKOFF_FACTOR: float = 1.5
    RATE_LIMIT_BACKOFF_CEILING_SECONDS: float = 60.0

    # Classification phase
    CLASSIFICATION_BATCH_SIZE: int = 5
    CLASSIFICATION_DELAY_SECONDS: float = 1.2
    CLASSIFICATION_RETRY_ATTEMPTS: int = 3

    # Sync run bookkeeping
    SYNC_COOLDOWN_SECONDS: int = 300
    PROGRESS_STALE_SECONDS: int = 600

    # Reaper
    REAPER_ENABLED: bool = True
    REAPER_INTERVAL_SECONDS: int = 300
    REAPER_STUCK_MINUTES: int = 10
    REAPER_UNAUTHORIZED_HOURS: int = 2
    REAPER_CONNECTED_AUDIT_MINUTES: int = 60
    REAPER_SYNC_LOST_MINUTES: int = 30

    # Billing
    TRIAL_DAYS: int = 3

    # Webhooks from the gateway
    WEBHOOK_URL: str = ""
    WEBHOOK_SECRET: str = ""

    # Broadcast pacing
    SEND_DELAY_SECONDS: float = 1.0

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:3000,https://reecher.app"

    # Sentry
    SENTRY_DSN: str = ""

    # Environment (normalized to lowercase)
    ENVIRONMENT: str = "development"

    def model_post_init(self, __context) -> None:
        object.__setattr__(self, "ENVIRONMENT", self.ENVIRONMENT.strip().lower())
        object.__setattr__(self, "STORE_BACKEND", self.STORE_BACKEND.strip().lower())
        if len(self.JWT_SECRET) < 32:
            _config_logger.warning("JWT_SECRET is shorter than 32 characters, weak secret")
        if len(self.ENCRYPTION_KEY) < 32:
            _config_logger.warning("ENCRYPTION_KEY is shorter than 32 characters, weak key")

    @property
    def internal_api_secret(self) -> str:
        """Secret for cron/internal endpoints. Defaults to JWT_SECRET if not explicitly set."""
        return self.INTERNAL_API_SECRET or self.JWT_SECRET

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.WEBHOOK_URL)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()
