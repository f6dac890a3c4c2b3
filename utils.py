"""Utility functions for the Ollama proxy service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger("ollama_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Ollama proxy startup config ===")
    log.info("UPSTREAM_BASE_URL=%s", config.upstream_base_url)
    log.info("UPSTREAM_TIMEOUT_S=%s", config.upstream_timeout_s)
    log.info("STREAM_MODE=%s", config.stream_mode.value)
    log.info("TRIM_MODE=%s", config.trim_mode.value)
    if config.trim_mode.value == "off":
        log.info("TRIM_MODE=off means oversized chat prompts are rejected instead of trimmed.")
    log.info("STREAM_CHUNK_SIZE=%s", config.stream_chunk_size)
    log.info("STREAM_DELAY_S=%s", config.stream_delay_s)
    log.info("PREWARM=%s", config.prewarm)
    log.info("DEBUG_UPSTREAM_BODIES=%s", config.debug_upstream_bodies)
    log.info("HOST=%s PORT=%s", config.host, config.port)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path or "<console>")
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===============================")


def now_rfc3339(now: datetime | None = None) -> str:
    """
    UTC timestamp with a fixed seven-digit fraction, e.g. 2025-01-01T00:00:00.1234560Z.

    Ollama clients parse this exact width; Python only has microseconds so the
    seventh digit is always zero.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%f") + "0Z"
