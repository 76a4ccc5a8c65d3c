from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service configuration from the environment, with .env as a fallback.

    Only DATABASE_URL is required; create_app() accepts an explicit instance
    so tests can point each app at its own database.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Database (any SQLAlchemy URL)
    DATABASE_URL: str
    DB_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Pagination
    DEFAULT_CONVERSATION_LIMIT: int = 50
    DEFAULT_MESSAGE_LIMIT: int = 100
    MAX_PAGE_LIMIT: int = 500


@lru_cache()
def get_settings() -> Settings:
    """Settings read once per process; call get_settings.cache_clear() to reload."""
    return Settings()
