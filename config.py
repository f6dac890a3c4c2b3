"""Configuration management for the Ollama proxy service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class StreamMode(str, Enum):
    """Session-wide streaming override."""

    ON = "on"
    OFF = "off"
    ASK = "ask"  # per request


class TrimMode(str, Enum):
    """Session-wide truncation override ("trim mode")."""

    ON = "on"
    OFF = "off"


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _env_stream_mode(name: str, default: StreamMode) -> StreamMode:
    v = (os.getenv(name) or "").strip().lower()
    if v in {"on", "true", "1", "always"}:
        return StreamMode.ON
    if v in {"off", "false", "0", "never"}:
        return StreamMode.OFF
    if v == "ask":
        return StreamMode.ASK
    return default


def _env_trim_mode(name: str, default: TrimMode) -> TrimMode:
    v = (os.getenv(name) or "").strip().lower()
    if v in {"on", "true", "1", "p", "always"}:
        return TrimMode.ON
    if v in {"off", "false", "0", "never"}:
        return TrimMode.OFF
    return default


def env_is_set(name: str) -> bool:
    """True when the variable is present and non-empty."""
    return bool((os.getenv(name) or "").strip())


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Upstream settings
    upstream_base_url: str
    upstream_timeout_s: float

    # Session-wide toggles (read-only once the app is built)
    stream_mode: StreamMode
    trim_mode: TrimMode

    # NDJSON emission
    stream_chunk_size: int
    stream_delay_s: float

    # Startup behaviour
    prewarm: bool
    interactive_toggles: bool

    # Debug traffic logging (VERY VERBOSE)
    debug_upstream_bodies: bool

    # Server settings
    host: str
    port: int
    log_level: str
    log_path: str
    max_request_bytes: int

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            upstream_base_url=_env_str("UPSTREAM_BASE_URL", "https://pfuner.xyz").rstrip("/"),
            upstream_timeout_s=_env_float("UPSTREAM_TIMEOUT_S", 60.0),
            stream_mode=_env_stream_mode("STREAM_MODE", StreamMode.ASK),
            trim_mode=_env_trim_mode("TRIM_MODE", TrimMode.OFF),
            stream_chunk_size=_env_int("STREAM_CHUNK_SIZE", 10),
            stream_delay_s=_env_float("STREAM_DELAY_S", 0.01),
            prewarm=_env_bool("PREWARM", True),
            interactive_toggles=_env_bool("INTERACTIVE_TOGGLES", True),
            debug_upstream_bodies=_env_bool("DEBUG_UPSTREAM_BODIES", False),
            host=_env_str("HOST", "127.0.0.1"),
            port=_env_int("PORT", 11434),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", ""),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
        )

    @property
    def trim_enabled(self) -> bool:
        return self.trim_mode is TrimMode.ON

    def validate(self) -> None:
        """Validate configuration."""
        if not self.upstream_base_url:
            raise ValueError("UPSTREAM_BASE_URL must be non-empty")
        if self.upstream_timeout_s <= 0:
            raise ValueError("UPSTREAM_TIMEOUT_S must be > 0")
        if self.stream_chunk_size <= 0:
            raise ValueError("STREAM_CHUNK_SIZE must be > 0")
        if self.stream_delay_s < 0:
            raise ValueError("STREAM_DELAY_S must be >= 0")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be in 1..65535")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
