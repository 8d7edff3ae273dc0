"""Application configuration using Pydantic Settings"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent.parent.parent / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch application
    client_id: str = Field(..., description="Twitch application Client ID")
    client_secret: str = Field(..., description="Twitch application Client Secret")
    redirect_url: str = Field(..., description="OAuth redirect URL registered with Twitch")

    # EventSub webhook transport
    eventsub_secret: str = Field(
        ..., min_length=10, max_length=100, description="HMAC secret for EventSub callbacks"
    )
    callback_url: str = Field(..., description="Public URL of the /_notify/twitch endpoint")

    # Downstream bot
    bot_url: str = Field(..., description="Bot endpoint receiving live notifications")

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")
    database_ssl: str = Field(default="prefer", description="asyncpg ssl mode")
    run_migrations: bool = Field(default=True, description="Apply pending migrations on startup")

    # Environment
    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3000, description="Server port")

    # Twitch client tuning
    http_timeout: float = Field(default=10.0, description="Timeout for every outbound request")
    token_refresh_margin: int = Field(
        default=300, description="Seconds subtracted from the app token lifetime"
    )
    token_lock_timeout: float = Field(
        default=15.0, description="Max seconds to wait for the app token lock"
    )

    # Webhook handling
    message_dedup_ttl: int = Field(
        default=600, description="Seconds a processed EventSub message id is remembered"
    )

    # Orphaned subscription sweep
    orphan_sweep_interval: int = Field(
        default=3600, description="Seconds between orphan sweeps, 0 disables"
    )
    orphan_grace_period: int = Field(
        default=600, description="Minimum age of a subscription before it can be swept"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL uses a PostgreSQL scheme"""
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("database_url must start with postgresql:// or postgres://")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()  # type: ignore[call-arg]
