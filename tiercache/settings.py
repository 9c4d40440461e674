"""Configuration management using pydantic-settings."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Cache settings loaded from TIERCACHE_* environment variables."""

    # Master switch: when off, every resolve calls upstream directly
    cache_enabled: bool = True

    # Key namespace inside the shared stores
    key_prefix: str = "tc"

    # Persistent and fallback layers
    database_url: str = "sqlite:///./tiercache.db"
    fallback_ttl_seconds: int = 7 * 24 * 3600
    validator_ttl_seconds: int = 24 * 3600

    # Per-request memory layer
    memory_max_items: int = 100

    # Single-flight lock
    lock_lease_seconds: int = 30
    lock_max_wait_seconds: float = 5.0
    lock_poll_interval_seconds: float = 0.1

    # Upstream requests
    request_timeout_seconds: float = 10.0
    max_retries: int = 2

    debug: bool = False

    class Config:
        env_prefix = "TIERCACHE_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
