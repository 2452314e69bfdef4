"""
Configuration management for the Icecast monitor.

Reads configuration from an optional .env file and environment variables with
sensible defaults. The stream URL is the only required value and may also be
given on the command line.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from icecast_monitor.exceptions import ConfigError

# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/icecast-monitor/monitor.env")

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("ICECAST_MONITOR_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {value} (must be an integer)")


def _get_optional_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass
class MonitorConfig:
    """Monitor configuration loaded from .env file, environment and CLI."""

    stream_url: str = ""

    # Metrics endpoint
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 9101

    # Stream supervision
    reconnect_delay_ms: int = 3000
    stall_timeout_ms: int = 10000

    # Listener poller (disabled when status_url is None)
    status_url: Optional[str] = None
    listener_poll_interval_ms: int = 15000

    ffmpeg_bin: str = "ffmpeg"

    # Logging
    log_level: str = "INFO"

    @property
    def reconnect_delay_sec(self) -> float:
        return self.reconnect_delay_ms / 1000.0

    @property
    def stall_timeout_sec(self) -> float:
        return self.stall_timeout_ms / 1000.0

    @property
    def listener_poll_interval_sec(self) -> float:
        return self.listener_poll_interval_ms / 1000.0

    @classmethod
    def load_config(cls, stream_url: Optional[str] = None) -> "MonitorConfig":
        """
        Load configuration from environment variables.

        Args:
            stream_url: Stream URL from the command line; ICECAST_URL wins if set

        Returns:
            MonitorConfig instance with loaded values

        Raises:
            ConfigError: If configuration is invalid or the stream URL is missing
        """
        # Load .env file first (if it exists)
        _load_env_file()

        config = cls(
            stream_url=_get_optional_str("ICECAST_URL") or (stream_url or ""),
            metrics_host=os.getenv("METRICS_HOST", "0.0.0.0"),
            metrics_port=_get_int("METRICS_PORT", 9101),
            reconnect_delay_ms=_get_int("RECONNECT_DELAY_MS", 3000),
            stall_timeout_ms=_get_int("STALL_TIMEOUT_MS", 10000),
            status_url=_get_optional_str("ICECAST_STATUS_URL"),
            listener_poll_interval_ms=_get_int("LISTENER_POLL_INTERVAL_MS", 15000),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not self.stream_url:
            raise ConfigError("Missing stream URL (pass it as an argument or set ICECAST_URL)")

        if not self.stream_url.startswith(("http://", "https://")):
            raise ConfigError(f"Invalid stream URL: {self.stream_url} (must be http:// or https://)")

        if self.metrics_port < 0 or self.metrics_port > 65535:
            raise ConfigError(f"Invalid METRICS_PORT: {self.metrics_port} (must be 0-65535)")

        if self.reconnect_delay_ms < 0:
            raise ConfigError(f"Invalid RECONNECT_DELAY_MS: {self.reconnect_delay_ms} (must be >= 0)")

        if self.stall_timeout_ms <= 0:
            raise ConfigError(f"Invalid STALL_TIMEOUT_MS: {self.stall_timeout_ms} (must be > 0)")

        if self.listener_poll_interval_ms <= 0:
            raise ConfigError(
                f"Invalid LISTENER_POLL_INTERVAL_MS: {self.listener_poll_interval_ms} (must be > 0)"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )


def load_config(stream_url: Optional[str] = None) -> MonitorConfig:
    """
    Load and validate monitor configuration from environment variables.

    Raises:
        ConfigError: If configuration is invalid
    """
    try:
        return MonitorConfig.load_config(stream_url)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        raise
