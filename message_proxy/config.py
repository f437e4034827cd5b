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

    # Chat store - required from .env
    CHAT_DB_PATH: str

    # Shared secret for the API and the live socket - required from .env
    API_TOKEN: str

    LOG_LEVEL: str = "INFO"
    APP_VERSION: str = "1.0.0"

    # Push notifications (IFTTT Maker webhook); empty key disables them
    IFTTT_MAKER_KEY: Optional[str] = None
    IFTTT_EVENT: str = "imessageReceived"
    NOTIFIER_BASE_URL: str = "https://maker.ifttt.com"
    NOTIFIER_TIMEOUT_SECONDS: float = 5.0

    # Poll loop
    POLL_INTERVAL_SECONDS: float = 2.0
    POLL_BATCH_SIZE: int = 25

    # Outbound send queue
    SEND_VERIFY_ATTEMPTS: int = 13
    SEND_VERIFY_INTERVAL_SECONDS: float = 1.0
    SEND_MAX_FAILURES: int = 3
    SEND_VERIFY_WINDOW: int = 15
    OSASCRIPT_PATH: str = "/usr/bin/osascript"

    # Live updates
    BROADCAST_TIMEOUT_SECONDS: float = 2.0
    AUTH_TIMEOUT_SECONDS: float = 2.0

    # Contacts
    CONTACTS_PATH: Optional[str] = None
    COUNTRY_CODE_PREFIX: str = "+1"

    DEFAULT_MESSAGE_LIMIT: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
