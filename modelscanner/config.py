"""Worker configuration via Pydantic Settings.

All configuration is driven by environment variables (or a ``.env`` file in
the working directory).  Every field has a default so that a worker can be
started against a local Redis with nothing else configured.

Usage::

    from modelscanner.config import get_settings

    settings = get_settings()
    print(settings.temp_folder)

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, patch ``modelscanner.config.get_settings`` or set the relevant
environment variables before calling ``get_settings()`` for the first time.
"""
from __future__ import annotations

import functools
import tempfile
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


class Settings(BaseSettings):
    """ModelScanner worker settings.

    Environment variables are read case-insensitively. A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Celery broker and result backend DSN",
    )

    # Local storage
    temp_folder: Path = Field(
        default=Path(tempfile.gettempdir()) / "modelscanner",
        description="Directory holding the transient local copy of each downloaded file",
    )
    always_invalidate: bool = Field(
        default=False,
        description="Re-download even when a local copy with the same name already exists",
    )

    # HTTP
    http_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout for the download and callback HTTP calls",
    )
    download_chunk_size: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Chunk size in bytes used when streaming a download to disk",
    )

    # ClamAV
    clamav_host: str = Field(
        default="",
        description="clamd host; leave empty to disable the ClamAV scan task",
    )
    clamav_port: int = Field(default=3310, ge=1, le=65535)

    # Queueing
    task_max_retries: int = Field(
        default=1,
        ge=0,
        description="Retries granted to an invocation after a transport failure or abort",
    )
    task_retry_countdown_seconds: int = Field(default=30, ge=0)

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_VALID_LOG_LEVELS)}")
        return level


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()


settings = get_settings()
