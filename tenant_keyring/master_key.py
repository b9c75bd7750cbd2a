"""
Master key sources.

The master key wraps every DEK. It must stay stable for the lifetime of a
process; rotating it is an administrative procedure outside this library.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from .crypto import AES_256_KEY_SIZE, SecureKey
from .errors import FatalConfigurationError

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "TENANT_KEYRING_MASTER_KEY"


class MasterKeySource(ABC):
    """Supplies the root key that wraps and unwraps DEKs."""

    @abstractmethod
    def get_master_key(self) -> SecureKey:
        """
        Return the 32-byte master key.

        Raises:
            FatalConfigurationError: If the key is unavailable or malformed
        """
        ...


class StaticMasterKeySource(MasterKeySource):
    """Master key supplied directly (tests, or keys fetched by the caller)."""

    def __init__(self, key: bytes | SecureKey) -> None:
        secure = key if isinstance(key, SecureKey) else SecureKey(key)
        if len(secure) != AES_256_KEY_SIZE:
            raise FatalConfigurationError(
                f"Master key must be {AES_256_KEY_SIZE} bytes, got {len(secure)}"
            )
        self._key = secure

    @classmethod
    def generate(cls) -> StaticMasterKeySource:
        """Fresh random master key. Data wrapped by it dies with the process."""
        return cls(SecureKey.generate())

    def get_master_key(self) -> SecureKey:
        return self._key


class EnvironmentMasterKeySource(MasterKeySource):
    """
    Master key read from an environment variable.

    Accepts 64 hex characters or standard base64 of 32 bytes. The value is
    decoded once and then held for the lifetime of the source.
    """

    def __init__(self, variable: str = MASTER_KEY_ENV, value: Optional[str] = None) -> None:
        self._variable = variable
        self._value = value
        self._key: Optional[SecureKey] = None

    def get_master_key(self) -> SecureKey:
        if self._key is None:
            raw = self._value if self._value is not None else os.environ.get(self._variable)
            if not raw:
                raise FatalConfigurationError(f"{self._variable} is not set")
            self._key = SecureKey(_decode_key(raw.strip(), self._variable))
            logger.info("Loaded master key from %s", self._variable)
        return self._key


def _decode_key(raw: str, variable: str) -> bytes:
    if len(raw) == AES_256_KEY_SIZE * 2:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise FatalConfigurationError(
            f"{variable} must be 64 hex characters or base64 of 32 bytes"
        ) from None
    if len(decoded) != AES_256_KEY_SIZE:
        raise FatalConfigurationError(
            f"{variable} must decode to {AES_256_KEY_SIZE} bytes, got {len(decoded)}"
        )
    return decoded
