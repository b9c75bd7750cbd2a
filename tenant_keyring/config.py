"""
Configuration loaded from environment variables or a .env file.

Variables:
    DATABASE_URL                        PostgreSQL DSN (optional)
    TENANT_KEYRING_MASTER_KEY           64 hex chars or base64 of 32 bytes
    TENANT_KEYRING_HASH_SALT            Salt for hash_identifier()
    TENANT_KEYRING_CACHE_MAX_ENTRIES    DEK cache size (default 1024)
    TENANT_KEYRING_CACHE_TTL_SECONDS    Version entry lifetime (default: none)
    TENANT_KEYRING_CACHE_ACTIVE_TTL_SECONDS  Active pointer lifetime (default 60)
    TENANT_KEYRING_LOG_LEVEL            Logging level (default INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from .cache import DEFAULT_ACTIVE_TTL_SECONDS
from .errors import FatalConfigurationError
from .master_key import MASTER_KEY_ENV

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    """Runtime settings."""

    database_url: Optional[str] = None
    master_key: Optional[str] = None
    hash_salt: Optional[str] = None
    cache_max_entries: Optional[int] = 1024
    cache_ttl_seconds: Optional[float] = None
    cache_active_ttl_seconds: Optional[float] = DEFAULT_ACTIVE_TTL_SECONDS
    log_level: str = "INFO"

    def __repr__(self) -> str:
        return (
            f"Settings(database_url={'set' if self.database_url else None}, "
            f"master_key={'[REDACTED]' if self.master_key else None}, "
            f"hash_salt={'[REDACTED]' if self.hash_salt else None}, "
            f"cache_max_entries={self.cache_max_entries}, "
            f"cache_ttl_seconds={self.cache_ttl_seconds}, "
            f"cache_active_ttl_seconds={self.cache_active_ttl_seconds}, "
            f"log_level={self.log_level})"
        )

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None) -> Settings:
        """
        Load settings, reading `env_file` (or ./.env) first.

        Variables already present in the environment win over the file.

        Raises:
            FatalConfigurationError: If a numeric variable is malformed
        """
        load_dotenv(env_file)

        return cls(
            database_url=os.environ.get("DATABASE_URL") or None,
            master_key=os.environ.get(MASTER_KEY_ENV) or None,
            hash_salt=os.environ.get("TENANT_KEYRING_HASH_SALT") or None,
            cache_max_entries=_int_env("TENANT_KEYRING_CACHE_MAX_ENTRIES", 1024),
            cache_ttl_seconds=_float_env("TENANT_KEYRING_CACHE_TTL_SECONDS"),
            cache_active_ttl_seconds=_float_env(
                "TENANT_KEYRING_CACHE_ACTIVE_TTL_SECONDS", DEFAULT_ACTIVE_TTL_SECONDS
            ),
            log_level=os.environ.get("TENANT_KEYRING_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """Configure root logging for CLI and service entry points."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _int_env(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise FatalConfigurationError(f"{name} must be positive, got {value}")
    return value


def _float_env(name: str, default: Optional[float] = None) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise FatalConfigurationError(f"{name} must be positive, got {value}")
    return value
