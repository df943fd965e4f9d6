"""Runtime configuration and logging setup."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Environment-driven settings (``DOCKYARD_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="DOCKYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Path(".dockyard")
    db_path: Path | None = None

    source_webhook_secret: str | None = None
    build_webhook_secret: str | None = None

    health_interval_seconds: float = Field(default=2.0, gt=0)
    health_max_attempts: int = Field(default=30, ge=1)
    health_timeout_seconds: float = Field(default=2.0, gt=0)
    health_path: str = "/health"
    probe_host: str = "127.0.0.1"

    build_poll_interval_seconds: float = Field(default=5.0, gt=0)
    build_timeout_seconds: float = Field(default=900.0, gt=0)
    runtime_timeout_seconds: float = Field(default=60.0, gt=0)
    source_timeout_seconds: float = Field(default=300.0, gt=0)
    restore_retries: int = Field(default=3, ge=1)

    retention_count: int = Field(default=5, ge=1)

    alert_webhook_url: str | None = None
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def database_path(self) -> Path:
        return self.db_path or self.data_dir / "dockyard.db"

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    @property
    def snapshots_dir(self) -> Path:
        return self.data_dir / "snapshots"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a single console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(level.upper())
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)
