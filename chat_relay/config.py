from functools import lru_cache
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

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # Storage - "sql" uses DATABASE_URL, "memory" keeps a plain list
    DATABASE_URL: str = "sqlite://"
    STORE_BACKEND: str = "sql"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Retention
    RETENTION_HOURS: int = 48
    SWEEP_INTERVAL_SECONDS: float = 30 * 60

    # Message limits
    HISTORY_LIMIT: int = 100
    MAX_USERNAME_LENGTH: int = 20
    MAX_CONTENT_LENGTH: int = 500

    # Per-session outbound queue bound
    SEND_QUEUE_SIZE: int = 256


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every access.
    """
    return Settings()


# Global settings instance
settings = get_settings()
