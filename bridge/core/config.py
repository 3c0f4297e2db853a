"""
Application configuration using Pydantic Settings.

Configuration values can be set via environment variables or .env file.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay server settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Browser Bridge Relay"
    version: str = "1.0.0"
    debug: bool = False
    dev_mode: bool = False
    host: str = "0.0.0.0"
    port: int = 8600

    # Storage
    database_url: str = "sqlite:///./data/bridge.db"

    # Public URL of the mailbox endpoint, used when rendering agent instructions
    api_base_url: str = "http://localhost:8600/api"

    # Mailbox limits
    max_data_size: int = 20 * 1024 * 1024
    recommended_poll_interval_seconds: int = 1

    # Session key generation
    session_key_length: int = 11
    session_key_random_bytes: int = 14

    # Rate limiting configuration
    rate_limit_create_session: str = "30/minute"

    # Optional Redis URL for distributed rate limiting
    # When set, rate limits will be shared across multiple instances
    redis_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


# Global settings instance
settings = Settings()
