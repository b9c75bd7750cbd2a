"""
Cryptographic primitives for AES-256-GCM envelope encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- CipherResult: Ciphertext with its IV and detached authentication tag
- EnvelopeCipher: AES-256-GCM encryption/decryption and DEK wrapping

Only IntegrityError and ParameterError leave this module.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import IntegrityError, ParameterError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
IV_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)
ALGORITHM: str = "AES-256-GCM"


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise ParameterError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureKey):
            return NotImplemented
        return secrets.compare_digest(bytes(self._bytes), bytes(other._bytes))

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


KeyLike = Union[SecureKey, bytes, bytearray]


@dataclass(frozen=True)
class CipherResult:
    """
    Output of a single AES-GCM encryption.

    The tag is detached from the ciphertext so it can be stored and checked
    as its own field.
    """

    ciphertext: bytes
    iv: bytes  # 12 bytes
    auth_tag: bytes  # 16 bytes

    def to_aead_blob(self) -> bytes:
        """Industry-standard AEAD blob: iv || ciphertext || tag."""
        return self.iv + self.ciphertext + self.auth_tag

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> CipherResult:
        """
        Parse an AEAD blob produced by to_aead_blob().

        Raises:
            ParameterError: If blob is too small
        """
        min_size = IV_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise ParameterError(
                f"AEAD blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(
            ciphertext=blob[IV_SIZE:-TAG_SIZE],
            iv=blob[:IV_SIZE],
            auth_tag=blob[-TAG_SIZE:],
        )


def _key_bytes(key: KeyLike) -> bytes:
    raw = key.as_bytes() if isinstance(key, SecureKey) else bytes(key)
    if len(raw) != AES_256_KEY_SIZE:
        raise ParameterError(
            f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(raw)}"
        )
    return raw


class EnvelopeCipher:
    """
    AES-256-GCM authenticated encryption.

    Provides static methods for encryption and decryption with optional
    Additional Authenticated Data (AAD) for binding, and for wrapping DEKs
    under a master key.
    """

    @staticmethod
    def encrypt(
        plaintext: bytes,
        key: KeyLike,
        aad: Optional[bytes] = None,
    ) -> CipherResult:
        """
        Encrypt plaintext with AES-256-GCM under a fresh random IV.

        Args:
            plaintext: Data to encrypt
            key: 32-byte encryption key
            aad: Optional Additional Authenticated Data for binding

        Returns:
            CipherResult with ciphertext, iv and detached auth tag

        Raises:
            ParameterError: If key size is invalid
        """
        aesgcm = AESGCM(_key_bytes(key))
        iv = secrets.token_bytes(IV_SIZE)

        sealed = aesgcm.encrypt(iv, plaintext, aad)

        return CipherResult(
            ciphertext=sealed[:-TAG_SIZE],
            iv=iv,
            auth_tag=sealed[-TAG_SIZE:],
        )

    @staticmethod
    def decrypt(
        ciphertext: bytes,
        iv: bytes,
        auth_tag: bytes,
        key: KeyLike,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext with AES-256-GCM.

        Args:
            ciphertext: Encrypted bytes (without tag)
            iv: 12-byte IV used for encryption
            auth_tag: 16-byte authentication tag
            key: 32-byte decryption key
            aad: Optional Additional Authenticated Data (must match encryption)

        Returns:
            Decrypted plaintext bytes

        Raises:
            ParameterError: If key/IV/tag size is invalid
            IntegrityError: If tag verification fails
        """
        raw_key = _key_bytes(key)

        if len(iv) != IV_SIZE:
            raise ParameterError(f"Invalid IV size: expected {IV_SIZE}, got {len(iv)}")

        if len(auth_tag) != TAG_SIZE:
            raise ParameterError(
                f"Invalid tag size: expected {TAG_SIZE}, got {len(auth_tag)}"
            )

        aesgcm = AESGCM(raw_key)

        try:
            return aesgcm.decrypt(iv, ciphertext + auth_tag, aad)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise IntegrityError("Decryption failed") from None

    @staticmethod
    def wrap_key(master_key: KeyLike, dek: SecureKey, key_id: str) -> bytes:
        """
        Encrypt a DEK under the master key (AAD = key_id) into an AEAD blob.

        For a 32-byte DEK: 12 + 32 + 16 = 60 bytes total.
        """
        result = EnvelopeCipher.encrypt(dek.as_bytes(), master_key, key_id.encode())
        return result.to_aead_blob()

    @staticmethod
    def unwrap_key(master_key: KeyLike, blob: bytes, key_id: str) -> SecureKey:
        """
        Recover a DEK from its wrapped blob.

        Raises:
            IntegrityError: If the blob was tampered with, belongs to another
                key id, or was wrapped under a different master key
        """
        result = CipherResult.from_aead_blob(blob)
        dek_bytes = EnvelopeCipher.decrypt(
            result.ciphertext, result.iv, result.auth_tag, master_key, key_id.encode()
        )
        return SecureKey(dek_bytes)
