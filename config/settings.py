"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backend configuration
    api_base_url: str = "http://localhost:3001"
    api_version: str = "v1"
    api_auth_token: Optional[str] = None
    request_timeout_seconds: float = 10.0

    # Persistent transport caches (assets + API responses)
    cache_enabled: bool = True
    cache_db_path: Path = Path("./data/transport_cache.db")

    # Query cache defaults (manufacturing data should be fresh)
    query_stale_seconds: float = 30.0
    query_gc_seconds: float = 300.0
    query_gc_interval_seconds: float = 30.0
    query_max_attempts: int = 4
    revalidation_workers: int = 4
    refetch_on_window_focus: bool = True
    refetch_on_reconnect: bool = True

    # Mutations are retried far more conservatively
    mutation_max_attempts: int = 2
    send_idempotency_keys: bool = True

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def api_root(self) -> str:
        """Base URL every gateway endpoint is appended to."""
        return f"{self.api_base_url.rstrip('/')}/api/{self.api_version}"


settings = Settings()
