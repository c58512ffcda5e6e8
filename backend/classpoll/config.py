from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "poll-option-images"

    DEFAULT_TIME_LIMIT: int = 60
    TIMER_INTERVAL: float = 1.0
    CHAT_HISTORY_LIMIT: int = 100
    # None keeps every finished poll
    POLL_HISTORY_LIMIT: Optional[int] = None
    EVENT_LOG_LIMIT: int = 500

    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 5001


@lru_cache
def get_settings() -> Settings:
    return Settings()
