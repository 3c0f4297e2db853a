"""
Browser agent configuration using Pydantic Settings.

Values are read from ``BRIDGE_AGENT_*`` environment variables or the .env file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Browser agent settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Relay mailbox endpoint
    relay_url: str = "http://localhost:8600/api"
    http_timeout_seconds: float = 30.0

    # Chromium remote debugging endpoint (--remote-debugging-port)
    devtools_url: str = "http://127.0.0.1:9222"

    poll_interval_seconds: float = 1.0
    keep_alive_interval_seconds: float = 20.0

    # Persisted tab -> session mirror
    state_database_url: str = "sqlite:///./data/agent_state.db"

    log_level: str = "INFO"
    json_logging: bool = False
