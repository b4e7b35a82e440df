"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the Celery worker
and Celery beat.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="challenges")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (takes precedence over the POSTGRES_* parts).
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Garmin push/ping webhooks
    # Header the platform sends on every delivery; presence is logged, never enforced.
    GARMIN_WEBHOOK_CLIENT_HEADER: str = Field(default="garmin-client-id")
    GARMIN_API_BASE_URL: str = Field(default="https://apis.garmin.com")
    # Daily catch-up pull for deliveries the webhooks missed.
    GARMIN_BACKFILL_DAYS: int = Field(default=3, ge=1)

    # Retry scheduler
    RETRY_BASE_DELAY_S: int = Field(default=60, ge=1)
    RETRY_MAX_DELAY_S: int = Field(default=6 * 60 * 60, ge=1)
    RETRY_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    RETRY_SCAN_INTERVAL_S: int = Field(default=5 * 60, ge=1)
    RETRY_SCAN_BATCH_SIZE: int = Field(default=10, ge=1)
    # In-flight claims older than this are treated as abandoned by a dead worker.
    CLAIM_TIMEOUT_S: int = Field(default=15 * 60, ge=1)
    NOTIFICATION_TASK_SOFT_TIME_LIMIT_S: int = Field(default=120, ge=1)

    # Challenge aggregation
    AGGREGATION_MAX_RETRIES: int = Field(default=3, ge=1)

    # Shared secret for operator endpoints (account links, manual entries, requeue).
    INTERNAL_API_SECRET: Optional[str] = Field(default=None)

    # Activity file uploads (shared-secret protected ingress)
    ACTIVITY_FILE_UPLOAD_SECRET: Optional[str] = Field(default=None)
    UPLOADS_DIR: str = Field(default="/uploads")
    ACTIVITY_FILE_MAX_BYTES: int = Field(default=25 * 1024 * 1024)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.1)


# Global settings instance
settings = Settings()
