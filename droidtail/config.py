"""
Configuration management for droidtail.

Reads configuration from an optional .env file and environment variables,
with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Default .env file location
DEFAULT_ENV_FILE = Path.home() / ".config" / "droidtail" / "droidtail.env"

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("DROIDTAIL_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file).expanduser()

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars
        logger.debug(f"Loaded environment from {env_path}")


def _parse_backoff_schedule(backoff_str: str) -> List[int]:
    """
    Parse restart backoff schedule from comma-separated string.

    Args:
        backoff_str: Comma-separated list of milliseconds (e.g., "250,500,1000")

    Returns:
        List of backoff delays in milliseconds

    Raises:
        ValueError: If parsing fails or values are invalid
    """
    if not backoff_str:
        raise ValueError("Backoff schedule cannot be empty")

    try:
        delays = [int(x.strip()) for x in backoff_str.split(",")]
    except ValueError:
        raise ValueError(f"Invalid backoff schedule format: {backoff_str} (must be comma-separated integers)")
    if any(d < 0 for d in delays):
        raise ValueError("Backoff delays must not be negative")
    return delays


def _get_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _get_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


@dataclass
class RunnerConfig:
    """droidtail configuration loaded from .env file and environment variables."""

    # adb
    adb_path: Optional[str] = None
    logcat_buffers: str = "all"

    # Restart / crash-loop guard
    restart_backoff_ms: List[int] = field(
        default_factory=lambda: [250, 500, 1000, 2000, 5000]
    )
    min_uptime_ms: int = 1000
    max_restarts: int = 0  # 0 = unlimited

    # Streams
    queue_capacity: int = 1024
    terminate_grace_sec: float = 2.0

    # Logging
    log_level: str = "WARNING"
    log_file: Optional[str] = None

    @classmethod
    def load_config(cls) -> "RunnerConfig":
        """
        Load configuration from environment variables.

        Returns:
            RunnerConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        adb_path = os.getenv("DROIDTAIL_ADB") or None
        logcat_buffers = os.getenv("DROIDTAIL_LOGCAT_BUFFERS", "all")

        backoff_str = os.getenv("DROIDTAIL_RESTART_BACKOFF_MS", "250,500,1000,2000,5000")
        try:
            restart_backoff_ms = _parse_backoff_schedule(backoff_str)
        except ValueError as e:
            raise ValueError(f"Invalid DROIDTAIL_RESTART_BACKOFF_MS: {e}")

        config = cls(
            adb_path=adb_path,
            logcat_buffers=logcat_buffers,
            restart_backoff_ms=restart_backoff_ms,
            min_uptime_ms=_get_int("DROIDTAIL_MIN_UPTIME_MS", "1000"),
            max_restarts=_get_int("DROIDTAIL_MAX_RESTARTS", "0"),
            queue_capacity=_get_int("DROIDTAIL_QUEUE_CAPACITY", "1024"),
            terminate_grace_sec=_get_float("DROIDTAIL_TERMINATE_GRACE_SEC", "2.0"),
            log_level=os.getenv("DROIDTAIL_LOG_LEVEL", "WARNING"),
            log_file=os.getenv("DROIDTAIL_LOG_FILE") or None,
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.logcat_buffers.strip():
            raise ValueError("Logcat buffers cannot be empty")

        if not self.restart_backoff_ms:
            raise ValueError("Restart backoff schedule cannot be empty")
        if any(d < 0 for d in self.restart_backoff_ms):
            raise ValueError("Restart backoff delays must not be negative")

        if self.min_uptime_ms < 0:
            raise ValueError(f"Invalid min uptime: {self.min_uptime_ms} (must be >= 0)")

        if self.max_restarts < 0:
            raise ValueError(f"Invalid max restarts: {self.max_restarts} (must be >= 0)")

        if self.queue_capacity <= 0:
            raise ValueError(f"Invalid queue capacity: {self.queue_capacity} (must be > 0)")

        if self.terminate_grace_sec < 0:
            raise ValueError(f"Invalid terminate grace period: {self.terminate_grace_sec} (must be >= 0)")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )


def load_config() -> RunnerConfig:
    """
    Load and validate droidtail configuration from environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return RunnerConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
