from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./ticket_router.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Evolution API (WhatsApp gateway)
    EVOLUTION_API_URL: str = "http://localhost:8080"
    EVOLUTION_API_KEY: str = ""
    EVOLUTION_TIMEOUT_SECONDS: float = 30.0
    EVOLUTION_MAX_ATTEMPTS: int = 3
    EVOLUTION_RETRY_BASE_DELAY: float = 0.5
    EVOLUTION_RETRY_MAX_DELAY: float = 4.0

    # Public URL the gateway should post events to
    PUBLIC_WEBHOOK_URL: Optional[str] = None

    # Ticket defaults
    TICKET_CHANNEL: str = "whatsapp"
    TICKET_DEFAULT_PRIORITY: str = "normal"

    # Message batching
    MESSAGE_BATCH_ENABLED: bool = False
    MESSAGE_BATCH_SIZE: int = 10
    MESSAGE_BATCH_INTERVAL_SECONDS: float = 2.0
    MESSAGE_BATCH_MAX_ATTEMPTS: int = 3


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
