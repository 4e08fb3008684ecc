"""Configuration management for S3 Mirror.

Stores and retrieves settings from a JSON config file in the
platform-appropriate application data directory.  The bucket, local
directory and key prefix come from the command line, not from here.
"""

import json
import logging
from pathlib import Path
from typing import Any

from s3_mirror.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from s3_mirror.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    # ---- debouncing ----
    "quiescence_seconds": 2.0,  # path must be quiet this long before upload
    # ---- uploads ----
    "max_concurrent_uploads": 4,
    "retry_count": 5,  # retries after a transient failure (0 = no retries)
    "retry_delay_seconds": 1.0,  # backoff base, doubled per attempt
    "max_backoff_seconds": 60.0,
    # ---- filtering ----
    "include_patterns": [],  # Glob patterns to include (e.g. ["*.csv"])
    "exclude_patterns": [],  # Glob patterns to exclude (e.g. ["*.tmp", "~*"])
    # ---- S3 client ----
    "aws_region": "",  # blank = boto3 default resolution
    "aws_profile": "",
    "endpoint_url": "",  # for S3-compatible stores
    "connect_timeout_seconds": 10,
    "read_timeout_seconds": 60,
    # ---- logging ----
    "log_level": "INFO",
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                # Merge stored values over defaults so new keys get defaults
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.info("Configuration loaded from %s", self._path)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- debouncing ----

    @property
    def quiescence_seconds(self) -> float:
        """Return the quiescence window in seconds."""
        return float(self._data.get("quiescence_seconds", 2.0))

    @quiescence_seconds.setter
    def quiescence_seconds(self, value: float) -> None:
        """Set the quiescence window (minimum 0.1 s)."""
        self._data["quiescence_seconds"] = max(0.1, float(value))

    # ---- uploads ----

    @property
    def max_concurrent_uploads(self) -> int:
        """Return the cap on simultaneous uploads."""
        return int(self._data.get("max_concurrent_uploads", 4))

    @max_concurrent_uploads.setter
    def max_concurrent_uploads(self, value: int) -> None:
        """Set the cap on simultaneous uploads (minimum 1)."""
        self._data["max_concurrent_uploads"] = max(1, int(value))

    @property
    def retry_count(self) -> int:
        """Return the number of upload retry attempts."""
        return int(self._data.get("retry_count", 5))

    @retry_count.setter
    def retry_count(self, value: int) -> None:
        """Set the number of upload retry attempts."""
        self._data["retry_count"] = max(0, int(value))

    @property
    def retry_delay(self) -> float:
        """Return the backoff base in seconds."""
        return float(self._data.get("retry_delay_seconds", 1.0))

    @retry_delay.setter
    def retry_delay(self, value: float) -> None:
        self._data["retry_delay_seconds"] = max(0.0, float(value))

    @property
    def max_backoff(self) -> float:
        """Return the longest single backoff wait in seconds."""
        return float(self._data.get("max_backoff_seconds", 60.0))

    @max_backoff.setter
    def max_backoff(self, value: float) -> None:
        self._data["max_backoff_seconds"] = max(0.0, float(value))

    # ---- filtering ----

    @property
    def include_patterns(self) -> list[str]:
        """Glob patterns files must match to be mirrored (empty = all files)."""
        return self._data.get("include_patterns", [])

    @include_patterns.setter
    def include_patterns(self, value: list[str]) -> None:
        self._data["include_patterns"] = [p.strip() for p in value if p.strip()]

    @property
    def exclude_patterns(self) -> list[str]:
        """Return glob patterns used to skip files."""
        return self._data.get("exclude_patterns", [])

    @exclude_patterns.setter
    def exclude_patterns(self, value: list[str]) -> None:
        self._data["exclude_patterns"] = [p.strip() for p in value if p.strip()]

    # ---- S3 client ----

    @property
    def aws_region(self) -> str:
        return self._data.get("aws_region", "")

    @aws_region.setter
    def aws_region(self, value: str) -> None:
        self._data["aws_region"] = value.strip()

    @property
    def aws_profile(self) -> str:
        return self._data.get("aws_profile", "")

    @aws_profile.setter
    def aws_profile(self, value: str) -> None:
        self._data["aws_profile"] = value.strip()

    @property
    def endpoint_url(self) -> str:
        """Return the custom S3 endpoint (blank = AWS)."""
        return self._data.get("endpoint_url", "")

    @endpoint_url.setter
    def endpoint_url(self, value: str) -> None:
        self._data["endpoint_url"] = value.strip()

    @property
    def connect_timeout(self) -> float:
        return float(self._data.get("connect_timeout_seconds", 10))

    @connect_timeout.setter
    def connect_timeout(self, value: float) -> None:
        self._data["connect_timeout_seconds"] = max(1.0, float(value))

    @property
    def read_timeout(self) -> float:
        return float(self._data.get("read_timeout_seconds", 60))

    @read_timeout.setter
    def read_timeout(self, value: float) -> None:
        self._data["read_timeout_seconds"] = max(1.0, float(value))

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        """Set the number of rotated log backups to keep."""
        self._data["log_backup_count"] = max(0, int(value))
