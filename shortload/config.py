"""Process configuration for load runs.

Values come from environment variables (or a ``.env`` file) through Pydantic
``BaseSettings``. The target's base URL has a default; the API key does not,
and a run refuses to start without one.
"""

__all__ = ["ConfigurationError", "Settings", "get_settings", "require_api_key"]

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

PLACEHOLDER_API_KEY = "your-api-key-here"


class ConfigurationError(Exception):
    """Raised when the run cannot start because configuration is missing or invalid."""


class Settings(BaseSettings):
    BASE_URL: str = "http://localhost:8080"
    SHLINK_API_KEY: Optional[str] = None

    REQUEST_TIMEOUT_SECONDS: float = 10.0
    CACHE_HIT_THRESHOLD_MS: float = 50.0
    DRAIN_GRACE_SECONDS: float = 30.0
    PROGRESS_INTERVAL_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def require_api_key(settings: Settings) -> str:
    key = (settings.SHLINK_API_KEY or "").strip()
    if not key or key == PLACEHOLDER_API_KEY:
        raise ConfigurationError(
            "SHLINK_API_KEY environment variable is required "
            "(e.g. SHLINK_API_KEY=your-key shortload run --scenario baseline)"
        )
    if not settings.BASE_URL:
        raise ConfigurationError("BASE_URL must not be empty")
    return key
