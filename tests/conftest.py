"""Shared pytest configuration and fixtures for ModelScanner tests.

Sets environment variables before any modelscanner module is imported,
so that ``modelscanner.config.get_settings()`` is deterministic in the test
environment.
"""
from __future__ import annotations

import os
from pathlib import Path

import pytest

# Set env vars before any modelscanner module is imported
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("ALWAYS_INVALIDATE", "false")
os.environ.setdefault("CLAMAV_HOST", "")
os.environ.setdefault("TASK_RETRY_COUNTDOWN_SECONDS", "0")


@pytest.fixture
def temp_folder(tmp_path: Path) -> Path:
    """Transient storage directory (not created up front)."""
    return tmp_path / "storage"
