"""
Runtime configuration helpers for the sync subsystem and its backend app.

Loads defaults from the .env file located in the project root without
overriding variables provided by the platform.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    # Hosted backend tables (PostgreSQL in production, SQLite in tests)
    database_url: str = Field(default="sqlite+pysqlite:///./chatsync_backend.db", alias="DATABASE_URL")
    # Device-local durable storage
    local_store_url: str = Field(default="sqlite+pysqlite:///./chatsync_local.db", alias="LOCAL_STORE_URL")

    app_name: str = Field(default="Chat Sync Backend", alias="APP_NAME")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    cors_origins: str | None = Field(default=None, alias="CORS_ORIGINS")
    cron_secret: str | None = Field(default=None, alias="CRON_SECRET")

    # Access tokens for private realtime channels
    jwt_secret_key: str | None = Field(default=None, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expires_minutes: int = Field(default=1440, alias="JWT_EXPIRES_MINUTES")

    # Local persistence layer
    storage_prefix: str = Field(default="postup_", alias="STORAGE_PREFIX")
    feed_cache_ttl_seconds: int = Field(default=5 * 60, alias="FEED_CACHE_TTL_SECONDS")
    chat_list_cache_ttl_seconds: int = Field(default=2 * 60, alias="CHAT_LIST_CACHE_TTL_SECONDS")
    message_cache_ttl_seconds: int = Field(default=60, alias="MESSAGE_CACHE_TTL_SECONDS")
    offline_cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, alias="OFFLINE_CACHE_TTL_SECONDS")

    # Structured object cache
    object_cache_max_age_seconds: int = Field(default=5 * 60, alias="OBJECT_CACHE_MAX_AGE_SECONDS")
    object_cache_version: int = Field(default=1, alias="OBJECT_CACHE_VERSION")

    # Rate limiting defaults
    rate_limit_max_attempts: int = Field(default=10, alias="RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_ms: int = Field(default=60_000, alias="RATE_LIMIT_WINDOW_MS")
    rate_limit_block_ms: int = Field(default=300_000, alias="RATE_LIMIT_BLOCK_MS")

    # Object storage transformations
    storage_public_host: str = Field(default="supabase", alias="STORAGE_PUBLIC_HOST")
    image_default_quality: int = Field(default=80, alias="IMAGE_DEFAULT_QUALITY")
    image_default_format: str = Field(default="webp", alias="IMAGE_DEFAULT_FORMAT")

    # Background jobs
    sweep_interval_seconds: int = Field(default=60, alias="SWEEP_INTERVAL_SECONDS")
    publish_interval_seconds: int = Field(default=30, alias="PUBLISH_INTERVAL_SECONDS")
    disable_jobs: bool = Field(default=False, alias="DISABLE_JOBS")

    # Network notices
    network_notice_cooldown_seconds: float = Field(default=3.0, alias="NETWORK_NOTICE_COOLDOWN_SECONDS")
    network_probe_timeout_seconds: float = Field(default=5.0, alias="NETWORK_PROBE_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
