"""
Storage abstractions for key metadata and wrapped key material.

This module provides:
- KeyStore: Abstract interface for key storage backends
- InMemoryKeyStore: asyncio-safe in-memory implementation for testing

Backends enforce two uniqueness rules and report violations as
ConflictError: one row per (tenant, purpose, version), and at most one
active key per (tenant, purpose).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .errors import ConflictError, KeyNotFoundError
from .models import EncryptionKey, KeyPurpose, KeyStatus


class KeyStore(ABC):
    """
    Abstract storage interface for key metadata and wrapped material.

    All methods are async to support both in-memory and database backends.
    I/O failures must surface as TransientStoreError.
    """

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_key_metadata(self, key: EncryptionKey) -> None:
        """
        Insert key metadata.

        Raises:
            ConflictError: If the version exists, or key is active and the
                pair already has an active key
        """
        ...

    @abstractmethod
    async def update_key_status(self, key_id: str, status: KeyStatus) -> EncryptionKey:
        """
        Move a key to a new status and return the updated metadata.

        Raises:
            KeyNotFoundError: If the key does not exist
            InvalidKeyStateError: If the transition is not allowed
        """
        ...

    @abstractmethod
    async def get_active_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> Optional[EncryptionKey]:
        """Get the active key for a pair."""
        ...

    @abstractmethod
    async def get_key_metadata_by_version(
        self, tenant_id: str, purpose: KeyPurpose, version: int
    ) -> Optional[EncryptionKey]:
        """Get a specific key version for a pair."""
        ...

    @abstractmethod
    async def get_key_metadata(self, key_id: str) -> Optional[EncryptionKey]:
        """Get key metadata by ID."""
        ...

    @abstractmethod
    async def list_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> List[EncryptionKey]:
        """All versions for a pair, ordered by version."""
        ...

    @abstractmethod
    async def store_wrapped_material(self, key_id: str, wrapped: bytes) -> None:
        """Store the master-key-wrapped DEK for a key."""
        ...

    @abstractmethod
    async def get_wrapped_material(self, key_id: str) -> Optional[bytes]:
        """Get the wrapped DEK for a key."""
        ...

    # ------------------------------------------------------------------
    # Atomic lifecycle operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_key(self, key: EncryptionKey, wrapped: bytes) -> None:
        """
        Insert metadata and wrapped material as one unit (insert-if-absent).

        Raises:
            ConflictError: If the pair already has this version or an active key
        """
        ...

    @abstractmethod
    async def rotate_active_key(
        self,
        expected_active_key_id: str,
        new_key: EncryptionKey,
        wrapped: bytes,
    ) -> EncryptionKey:
        """
        Demote the active key to ROTATING and insert `new_key` as ACTIVE in
        one step. Returns the demoted key's metadata.

        Raises:
            ConflictError: If the active key is no longer
                `expected_active_key_id` or the new version already exists
        """
        ...


class InMemoryKeyStore(KeyStore):
    """
    In-memory key store for testing and single-process use.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self) -> None:
        self._keys: Dict[str, EncryptionKey] = {}
        self._versions: Dict[Tuple[str, KeyPurpose, int], str] = {}
        self._active: Dict[Tuple[str, KeyPurpose], str] = {}
        self._material: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def create_key_metadata(self, key: EncryptionKey) -> None:
        async with self._lock:
            self._insert(key)

    async def update_key_status(self, key_id: str, status: KeyStatus) -> EncryptionKey:
        async with self._lock:
            current = self._keys.get(key_id)
            if current is None:
                raise KeyNotFoundError(f"Key {key_id}")
            updated = current.with_status(status)
            self._keys[key_id] = updated
            pair = (current.tenant_id, current.purpose)
            if self._active.get(pair) == key_id:
                del self._active[pair]
            return updated

    async def get_active_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> Optional[EncryptionKey]:
        async with self._lock:
            key_id = self._active.get((tenant_id, purpose))
            return self._keys.get(key_id) if key_id else None

    async def get_key_metadata_by_version(
        self, tenant_id: str, purpose: KeyPurpose, version: int
    ) -> Optional[EncryptionKey]:
        async with self._lock:
            key_id = self._versions.get((tenant_id, purpose, version))
            return self._keys.get(key_id) if key_id else None

    async def get_key_metadata(self, key_id: str) -> Optional[EncryptionKey]:
        async with self._lock:
            return self._keys.get(key_id)

    async def list_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> List[EncryptionKey]:
        async with self._lock:
            keys = [
                k
                for k in self._keys.values()
                if k.tenant_id == tenant_id and k.purpose == purpose
            ]
        return sorted(keys, key=lambda k: k.version)

    async def store_wrapped_material(self, key_id: str, wrapped: bytes) -> None:
        async with self._lock:
            self._material[key_id] = bytes(wrapped)

    async def get_wrapped_material(self, key_id: str) -> Optional[bytes]:
        async with self._lock:
            return self._material.get(key_id)

    async def create_key(self, key: EncryptionKey, wrapped: bytes) -> None:
        async with self._lock:
            self._insert(key)
            self._material[key.key_id] = bytes(wrapped)

    async def rotate_active_key(
        self,
        expected_active_key_id: str,
        new_key: EncryptionKey,
        wrapped: bytes,
    ) -> EncryptionKey:
        pair = (new_key.tenant_id, new_key.purpose)
        async with self._lock:
            if self._active.get(pair) != expected_active_key_id:
                raise ConflictError(
                    f"Active key for {new_key.tenant_id}/{new_key.purpose} has changed"
                )
            demoted = self._keys[expected_active_key_id].with_status(KeyStatus.ROTATING)
            if (*pair, new_key.version) in self._versions:
                raise ConflictError(
                    f"Version {new_key.version} already exists for "
                    f"{new_key.tenant_id}/{new_key.purpose}"
                )
            self._keys[expected_active_key_id] = demoted
            del self._active[pair]
            self._insert(new_key)
            self._material[new_key.key_id] = bytes(wrapped)
            return demoted

    def _insert(self, key: EncryptionKey) -> None:
        """Insert under the lock, enforcing the uniqueness rules."""
        pair = (key.tenant_id, key.purpose)
        if (*pair, key.version) in self._versions:
            raise ConflictError(
                f"Version {key.version} already exists for {key.tenant_id}/{key.purpose}"
            )
        if key.status == KeyStatus.ACTIVE and pair in self._active:
            raise ConflictError(f"{key.tenant_id}/{key.purpose} already has an active key")
        self._keys[key.key_id] = key
        self._versions[(*pair, key.version)] = key.key_id
        if key.status == KeyStatus.ACTIVE:
            self._active[pair] = key.key_id
