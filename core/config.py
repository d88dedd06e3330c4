"""
Runtime settings for dietvault.

Values come from ``DIETVAULT_*`` environment variables when present and fall
back to the defaults below.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

# Default location: %APPDATA%\dietvault  (Windows)
#                   ~/.local/share/dietvault  (Linux/macOS)
DEFAULT_DATA_DIR = Path(
    os.environ.get("APPDATA", Path.home() / ".local" / "share")
) / "dietvault"

DEFAULT_KEY_CACHE_TTL = 300.0       # 5 minutes
DEFAULT_MAX_BACKUPS = 5
DEFAULT_MIGRATION_ATTEMPTS = 3
DEFAULT_MIGRATION_RETRY_DELAY = 1.0  # seconds, multiplied by attempt number


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    """Tunable parameters of the vault."""

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    key_cache_ttl: float = DEFAULT_KEY_CACHE_TTL
    max_backups: int = DEFAULT_MAX_BACKUPS
    migration_max_attempts: int = DEFAULT_MIGRATION_ATTEMPTS
    migration_retry_delay: float = DEFAULT_MIGRATION_RETRY_DELAY
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.key_cache_ttl <= 0:
            raise ValueError("key_cache_ttl must be positive.")
        if self.max_backups < 1:
            raise ValueError("max_backups must be at least 1.")
        if self.migration_max_attempts < 1:
            raise ValueError("migration_max_attempts must be at least 1.")
        if self.migration_retry_delay < 0:
            raise ValueError("migration_retry_delay cannot be negative.")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        data_dir = os.environ.get("DIETVAULT_DATA_DIR")
        return cls(
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            key_cache_ttl=_env_float("DIETVAULT_KEY_CACHE_TTL", DEFAULT_KEY_CACHE_TTL),
            max_backups=_env_int("DIETVAULT_MAX_BACKUPS", DEFAULT_MAX_BACKUPS),
            migration_max_attempts=_env_int(
                "DIETVAULT_MIGRATION_ATTEMPTS", DEFAULT_MIGRATION_ATTEMPTS
            ),
            migration_retry_delay=_env_float(
                "DIETVAULT_MIGRATION_RETRY_DELAY", DEFAULT_MIGRATION_RETRY_DELAY
            ),
            log_level=os.environ.get("DIETVAULT_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def numeric_log_level(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.INFO
