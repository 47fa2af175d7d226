"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./matchdesk.db"

    # Runtime
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Trigger security (X-Cron-Secret header)
    CRON_SECRET: str = ""
    RATE_LIMIT_PER_MINUTE: str = "30/minute"

    # Object storage for uploaded match sheets
    STORAGE_BACKEND: str = "local"  # local | s3
    STORAGE_LOCAL_ROOT: str = "./storage"
    STORAGE_BUCKET: str = "match-reports"
    S3_ENDPOINT_URL: str = ""
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""
    S3_REGION: str = "auto"

    # Match-sheet pipeline
    PARSER_VERSION: str = "v1"
    ERROR_MESSAGE_MAX_CHARS: int = 300
    UPLOAD_MAX_BYTES: int = 20 * 1024 * 1024
    ATHLETE_CLUB_NAME: str = "Galo Maringá"

    # Fixture sync
    SYNC_DETAIL_CONCURRENCY: int = 3
    SYNC_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SYNC_MAX_RETRIES: int = 2
    SYNC_TARGET_CLUB: str = "GALO MARINGA"
    SYNC_USER_AGENT: str = "Mozilla/5.0 (compatible; matchdesk-sync/1.0)"

    # Run ledger
    RUN_STALE_AFTER_MINUTES: int = 60

    # Sentry (optional)
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
