"""
Application configuration using Pydantic Settings.
Loads process settings from environment variables with sensible defaults.

Runtime queue policy (``max-retries``, ``backoff-base``) lives in the
key-value file managed by ``queuectl.config_store``.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from ``QUEUECTL_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUEUECTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    home_dir: Path = Path.home() / ".queuectl"
    database_url: str | None = None
    database_busy_timeout_ms: int = 30000
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Runtime key-value file and pool state file
    config_file: Path | None = None
    state_file: Path | None = None

    # Worker Configuration
    worker_poll_interval_seconds: float = 2.0
    worker_heartbeat_interval_seconds: float = 10.0
    worker_stale_after_seconds: float = 60.0
    worker_shutdown_grace_seconds: float = 30.0
    worker_store_retry_seconds: float = 2.0
    worker_report_attempts: int = 5
    job_timeout_seconds: float | None = None

    # Observability
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    metrics_port: int | None = None
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "queuectl"

    @property
    def resolved_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file inside ``home_dir``."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.home_dir / 'queue.db'}"

    @property
    def resolved_config_file(self) -> Path:
        return self.config_file or self.home_dir / "config.json"

    @property
    def resolved_state_file(self) -> Path:
        return self.state_file or self.home_dir / "workers.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
