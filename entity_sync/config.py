from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from ENTITY_SYNC_* environment variables."""

    # Timings (seconds)
    debounce_seconds: float = 1.0
    saved_indicator_seconds: float = 2.0
    error_indicator_seconds: float = 3.0

    placeholder_prefix: str = "temp"

    # Logging
    log_level: str = "INFO"
    log_level_http: str = "WARNING"          # httpx / httpcore

    # Remote persistence
    api_base_url: str = "http://localhost:3000/api"
    http_timeout_seconds: float = 30.0

    # Mutation journal (":memory:" keeps it in-process)
    journal_path: str = ":memory:"

    model_config = SettingsConfigDict(
        env_prefix="ENTITY_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance — reads the environment once."""
    return Settings()
