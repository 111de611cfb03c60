"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/hooksync.db"

    # Encryption of destination connection URLs (validated at startup by EncryptionService)
    encryption_key: Optional[str] = None

    # Sync targets
    sync_default_schema: str = "public"
    sync_min_period_seconds: int = 600
    sync_max_period_seconds: int = 86400
    # Plain http:// destinations are only for local development.
    sync_allow_http: bool = False
    sync_max_transaction_seconds: int = 600
    sync_default_page_size: int = 200
    sync_max_page_size: int = 1000
    sync_max_parallelism: int = 8
    sync_max_stats: int = 100
    sync_lock_stale_seconds: int = 3600

    # Connection cache
    connection_cache_prune_interval_seconds: int = 120
    connection_timeout_fast_seconds: int = 30
    connection_timeout_slow_seconds: int = 300
    verify_connection_timeout_seconds: int = 5

    # HTTP destinations
    http_sync_timeout_seconds: float = 30.0
    http_sync_connect_timeout_seconds: float = 5.0
    http_sync_max_attempts: int = 3

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
