"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup (the service module builds its default app at import)
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("PREWARM", "false")
os.environ.setdefault("INTERACTIVE_TOGGLES", "false")
os.environ.setdefault("UPSTREAM_BASE_URL", "https://upstream.test")

from config import AppConfig, StreamMode, TrimMode  # noqa: E402


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def test_config():
    """Create test configuration (no pacing, per-request streaming, trim off)."""
    return AppConfig(
        upstream_base_url="https://upstream.test",
        upstream_timeout_s=60.0,
        stream_mode=StreamMode.ASK,
        trim_mode=TrimMode.OFF,
        stream_chunk_size=10,
        stream_delay_s=0.0,
        prewarm=False,
        interactive_toggles=False,
        debug_upstream_bodies=True,
        host="127.0.0.1",
        port=11434,
        log_level="DEBUG",
        log_path="",
        max_request_bytes=2_000_000,
    )
