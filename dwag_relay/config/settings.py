"""
Application settings and configuration.
All endpoints and secrets are loaded from environment variables.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Discord webhooks (one per content type, with a shared fallback)
    discord_webhook_url: Optional[str] = None
    discord_webhook_meme: Optional[str] = None
    discord_webhook_skit: Optional[str] = None
    discord_webhook_audio: Optional[str] = None

    # Inbound inbox service (conversation source and reply channel)
    inbox_url: Optional[str] = None
    inbox_token: Optional[str] = None
    bot_user_id: Optional[str] = None  # Items authored by the bot are ignored

    # Command grammar
    command_prefix: str = "dwag"

    # Database - Use DATA_DIR for a persistent volume
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Database URL with support for persistent volumes."""
        return f"sqlite+aiosqlite:///{self.data_dir}/dwag.db"

    # Polling
    poll_interval_seconds: int = 60
    scheduler_enabled: bool = True
    fetch_timeout_seconds: float = 30.0
    max_conversation_workers: int = 4

    # Deduplication
    dedup_cap: int = 1000

    # Dispatch
    dispatch_max_attempts: int = 3
    dispatch_backoff_base: float = 1.0
    dispatch_backoff_max: float = 30.0
    min_send_interval_seconds: float = 2.0  # Discord webhooks allow ~30 requests/minute
    send_timeout_seconds: float = 10.0

    # Application Settings
    debug: bool = False
    log_level: str = "INFO"

    @property
    def webhook_routes(self) -> Dict[str, str]:
        """Type to endpoint mapping, only for the types that are configured."""
        routes = {
            "meme": self.discord_webhook_meme,
            "skit": self.discord_webhook_skit,
            "audio": self.discord_webhook_audio,
        }
        return {kind: url for kind, url in routes.items() if url}

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
