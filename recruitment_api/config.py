"""
Configuration settings for the recruitment list service.

Reads settings from the environment and the project's .env file.
"""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Resolve paths
PACKAGE_DIR = Path(__file__).parent
PROJECT_ROOT = PACKAGE_DIR.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="",
        alias="DATABASE_URL",
        description="SQLAlchemy connection URL (PostgreSQL in production)"
    )
    db_schema: str = Field(
        default="recruitment_list",
        alias="DB_SCHEMA",
        description="Schema holding all recruitment list tables"
    )

    # Redis for Celery
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL for Celery broker"
    )

    # Application settings
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: str = Field(
        default="*",
        alias="CORS_ORIGINS",
        description="Comma separated list of allowed origins"
    )

    # Management user tokens
    token_sign_key: str = Field(
        default="",
        alias="TOKEN_SIGN_KEY",
        description="HMAC key used to validate management user JWTs"
    )

    # Study service
    study_service_url: str = Field(default="", alias="STUDY_SERVICE_URL")
    study_service_api_key: str = Field(default="", alias="STUDY_SERVICE_API_KEY")
    study_service_timeout: float = Field(
        default=30.0,
        alias="STUDY_SERVICE_TIMEOUT",
        description="Request timeout in seconds"
    )
    study_instance_id: str = Field(default="", alias="STUDY_INSTANCE_ID")
    study_global_secret: str = Field(
        default="",
        alias="STUDY_GLOBAL_SECRET",
        description="Global secret used to derive confidential participant ids"
    )

    # SMTP bridge (notifications)
    smtp_bridge_url: str = Field(default="", alias="SMTP_BRIDGE_URL")
    smtp_bridge_api_key: str = Field(default="", alias="SMTP_BRIDGE_API_KEY")
    smtp_bridge_timeout: float = Field(default=10.0, alias="SMTP_BRIDGE_TIMEOUT")

    # Sync settings
    participant_sync_overlap_minutes: int = Field(
        default=5,
        alias="PARTICIPANT_SYNC_OVERLAP_MINUTES",
        description="Minimum minutes between two participant syncs of a list"
    )
    data_sync_overlap_minutes: int = Field(
        default=5,
        alias="DATA_SYNC_OVERLAP_MINUTES",
        description="Minutes a running data sync blocks a new one (0 disables)"
    )
    sync_schedule_hour: int = Field(
        default=2,
        alias="SYNC_SCHEDULE_HOUR",
        description="Hour (UTC) of the nightly sync of all lists"
    )

    @property
    def participant_sync_overlap(self) -> timedelta:
        return timedelta(minutes=self.participant_sync_overlap_minutes)

    @property
    def data_sync_overlap(self) -> Optional[timedelta]:
        if self.data_sync_overlap_minutes <= 0:
            return None
        return timedelta(minutes=self.data_sync_overlap_minutes)

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience accessors
settings = get_settings()
