"""Configuration management for split-sync."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Bill defaults
    default_currency: str = "USD"
    max_description_length: int = 200

    # Realtime gateway (events go to an in-memory publisher when unset)
    realtime_gateway_url: str | None = None
    realtime_gateway_token: str | None = None
    broadcast_timeout_seconds: float = 5.0
    broadcast_max_workers: int = 8

    # Notification / reminder service (hooks are only logged when unset)
    notification_service_url: str | None = None
    notification_service_token: str | None = None

    # Chat service (mirrors go to the local transcript table when unset)
    chat_service_url: str | None = None
    chat_service_token: str | None = None

    http_timeout_seconds: float = 10.0

    # Database path
    database_path: Path = Path.home() / ".split_sync" / "split_sync.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your environment and .env file.\n"
            f"Error: {e}"
        ) from e
