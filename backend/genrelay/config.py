from __future__ import annotations
"""Environment-driven settings for the gateway."""

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Read from the process environment, then `.env`; unknown keys are ignored."""

    # --- Application ---
    APP_NAME: str = "GenRelay"
    DEBUG: bool = False

    # --- Persistence ---
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "root"
    DB_PASSWORD: str = ""
    DB_NAME: str = "genrelay"
    DB_URL: str = ""  # full SQLAlchemy URL, overrides the DB_* parts

    @property
    def DATABASE_URL(self) -> str:
        """Async connection string; asyncmy MySQL unless DB_URL is set."""
        if self.DB_URL:
            return self.DB_URL
        auth = f"{self.DB_USER}:{quote_plus(self.DB_PASSWORD)}"
        return f"mysql+asyncmy://{auth}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"

    # --- Redis (cross-process notification relay) ---
    REDIS_URL: str = "redis://localhost:6379/0"
    NOTIFY_REDIS_ENABLED: bool = False

    # --- Media storage ---
    MEDIA_VOLUME: str = "media_volume"
    MEDIA_URL_PREFIX: str = "/media"

    # --- Timeouts (seconds) ---
    GENERATION_TIMEOUT: float = 600.0
    STORAGE_TIMEOUT: float = 300.0
    MEDIA_FETCH_TIMEOUT: float = 60.0
    MEDIA_RESOLVER_TIMEOUT: float = 30.0
    RECORD_UPDATE_TIMEOUT: float = 5.0

    # --- Task polling defaults ---
    POLL_INTERVAL: float = 5.0
    POLL_MAX_ATTEMPTS: int = 120
    POLL_BACKOFF: bool = False
    POLL_BACKOFF_MAX: float = 30.0

    # --- Live notifications ---
    SSE_HEARTBEAT_INTERVAL: float = 10.0
    SSE_MAILBOX_SIZE: int = 8

    # --- CORS ---
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
