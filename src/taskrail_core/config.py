"""Application settings."""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(default="sqlite:///./taskrail.db", alias="DATABASE_URL")

    # Pool settings only apply to server databases (PostgreSQL)
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW")
    db_pool_recycle: int = Field(default=3600, alias="DB_POOL_RECYCLE")
    sqlite_busy_timeout: float = Field(default=15.0, alias="SQLITE_BUSY_TIMEOUT")

    # Automation-created tasks may trigger further rules; stop after this depth
    rule_cascade_max_depth: int = Field(default=3, alias="RULE_CASCADE_MAX_DEPTH")

    # Open work sessions without a heartbeat for this long are closed as stale
    work_session_stale_timeout_s: int = Field(default=600, alias="WORK_SESSION_STALE_TIMEOUT_S")

    cors_origins: list[str] = Field(default_factory=lambda: ["*"], alias="CORS_ORIGINS")


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()
