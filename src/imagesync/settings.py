"""
Settings and configuration for imagesync.

Centralizes configuration values and provides validation with fail-fast behavior.
Loaded from environment variables; CLI flags override individual fields.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "LOG_LEVELS"]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for a sync run.

    retry_times: Retries per tag listing and per image copy (0=no retry)
    command_timeout_s: Deadline for the whole command, None for no limit
    http_timeout_s: Per-request registry timeout in seconds
    log_level: Root log level name
    """
    retry_times: int = 0
    command_timeout_s: Optional[float] = None
    http_timeout_s: float = 30.0
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate settings on construction."""
        if self.retry_times < 0:
            raise ValueError(f"retry_times must be non-negative, got {self.retry_times}")

        if self.command_timeout_s is not None and self.command_timeout_s <= 0:
            raise ValueError(f"command_timeout_s must be positive, got {self.command_timeout_s}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level {self.log_level!r}, expected one of {', '.join(LOG_LEVELS)}")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - IMAGESYNC_RETRY_TIMES (default: 0)
        - IMAGESYNC_COMMAND_TIMEOUT (default: unset, no timeout)
        - IMAGESYNC_HTTP_TIMEOUT (default: 30.0)
        - IMAGESYNC_LOG_LEVEL (default: INFO)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If a value cannot be parsed or fails validation

    Note:
        Creates a fresh Settings instance every time (no caching).
        This ensures test isolation and eliminates global state.
    """
    def get_float(key: str) -> Optional[float]:
        value = os.getenv(key)
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{key} must be a number, got {value!r}") from None

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        if not value:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{key} must be an integer, got {value!r}") from None

    http_timeout_s = get_float("IMAGESYNC_HTTP_TIMEOUT")
    return Settings(
        retry_times=get_int("IMAGESYNC_RETRY_TIMES", 0),
        command_timeout_s=get_float("IMAGESYNC_COMMAND_TIMEOUT"),
        http_timeout_s=30.0 if http_timeout_s is None else http_timeout_s,
        log_level=os.getenv("IMAGESYNC_LOG_LEVEL") or "INFO",
    )
