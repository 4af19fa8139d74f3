"""Configuration helpers for the Step chat proxy."""
from __future__ import annotations

import os
from dataclasses import dataclass, field


DEFAULT_BASE_URL = "https://stepchat.cn"
DEFAULT_FAILURE_STATUSES = frozenset({12, 22, 59, 404})


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_statuses(name: str, default: frozenset[int]) -> frozenset[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a comma separated list of integers") from exc


@dataclass
class ProxySettings:
    """Runtime configuration values for the proxy service."""

    host: str | None = None
    port: int | None = None
    base_url: str = DEFAULT_BASE_URL
    max_retries: int = 0
    retry_delay: float = 5.0
    request_timeout: float = 15.0
    stream_timeout: float = 120.0
    lease_ttl: float = 900.0
    file_max_size: int = 100 * 1024 * 1024
    upload_timeout: float = 60.0
    upload_poll_interval: float = 1.0
    upload_settle_delay: float = 1.0
    file_failure_statuses: frozenset[int] = field(default_factory=lambda: DEFAULT_FAILURE_STATUSES)
    max_frame_size: int = 16 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "ProxySettings":
        """Build settings from ``STEP_PROXY_*`` environment variables."""

        defaults = cls()
        host = os.getenv("STEP_PROXY_HOST") or None
        port_raw = os.getenv("STEP_PROXY_PORT")
        return cls(
            host=host,
            port=_env_int("STEP_PROXY_PORT", 0) if port_raw else None,
            base_url=(os.getenv("STEP_PROXY_BASE_URL") or defaults.base_url).rstrip("/"),
            max_retries=_env_int("STEP_PROXY_MAX_RETRIES", defaults.max_retries),
            retry_delay=_env_float("STEP_PROXY_RETRY_DELAY", defaults.retry_delay),
            request_timeout=_env_float("STEP_PROXY_REQUEST_TIMEOUT", defaults.request_timeout),
            stream_timeout=_env_float("STEP_PROXY_STREAM_TIMEOUT", defaults.stream_timeout),
            lease_ttl=_env_float("STEP_PROXY_LEASE_TTL", defaults.lease_ttl),
            file_max_size=_env_int("STEP_PROXY_FILE_MAX_SIZE", defaults.file_max_size),
            upload_timeout=_env_float("STEP_PROXY_UPLOAD_TIMEOUT", defaults.upload_timeout),
            upload_poll_interval=_env_float("STEP_PROXY_UPLOAD_POLL_INTERVAL", defaults.upload_poll_interval),
            upload_settle_delay=_env_float("STEP_PROXY_UPLOAD_SETTLE_DELAY", defaults.upload_settle_delay),
            file_failure_statuses=_env_statuses("STEP_PROXY_FILE_FAILURE_STATUSES", defaults.file_failure_statuses),
            max_frame_size=_env_int("STEP_PROXY_MAX_FRAME_SIZE", defaults.max_frame_size),
        )
