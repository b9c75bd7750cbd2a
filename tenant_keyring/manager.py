"""
Key lifecycle management.

This module provides:
- KeyLifecycleManager: Sole authority for creating, resolving and rotating DEKs
- ActiveKey: The DEK currently used for new encryptions of a pair
- RotationResult: Outcome of a rotation

Key hierarchy:
- Master key (MasterKeySource) -> wrapped DEK (KeyStore) -> Application data

Lifecycle per key version:
    ACTIVE -> ROTATING -> RETIRED   (no back-transitions)

1. First encrypt for a (tenant, purpose) creates version 1 as ACTIVE
2. rotate() inserts version N+1 as ACTIVE and demotes N to ROTATING in one
   store call, then asks an external worker to re-encrypt data
3. complete_rotation() (the worker's completion signal) retires version N
4. ROTATING and RETIRED versions stay resolvable for decryption
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .audit import AuditLogger
from .cache import ACTIVE, CachedKey, KeyCache
from .crypto import AES_256_KEY_SIZE, EnvelopeCipher, SecureKey
from .errors import (
    ConflictError,
    EnvelopeError,
    FatalConfigurationError,
    InvalidKeyStateError,
    KeyNotFoundError,
    ParameterError,
    TransientStoreError,
)
from .master_key import MasterKeySource
from .models import (
    AuditOperation,
    AuditOutcome,
    EncryptionKey,
    KeyPurpose,
    KeyStatus,
)
from .reencryption import NullReencryptionEmitter, ReencryptionEmitter
from .storage import KeyStore

logger = logging.getLogger(__name__)

PurposeLike = Union[KeyPurpose, str]
_Pair = Tuple[str, KeyPurpose]


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ActiveKey:
    """Result of get_or_create_active_key."""

    key: SecureKey
    key_id: str
    version: int


@dataclass(frozen=True)
class RotationResult:
    """
    Key rotation result.

    `performed` is False when this call lost a race and is reporting the
    rotation another caller made.
    """

    tenant_id: str
    purpose: KeyPurpose
    old_key_id: Optional[str]
    new_key_id: str
    old_version: Optional[int]
    new_version: int
    performed: bool = True

    def __str__(self) -> str:
        old = f"v{self.old_version}" if self.old_version is not None else "none"
        return f"{self.tenant_id}/{self.purpose}: {old} -> v{self.new_version}"


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate raw I/O failures from a store into TransientStoreError."""
    try:
        yield
    except EnvelopeError:
        raise
    except (OSError, asyncio.TimeoutError) as e:
        raise TransientStoreError(
            f"Key store failed during {action}: {type(e).__name__}"
        ) from e


# =============================================================================
# Lifecycle Manager
# =============================================================================


class KeyLifecycleManager:
    """
    Creates, resolves and rotates per-tenant DEKs.

    First use and rotation are serialized per (tenant, purpose) with an
    asyncio.Lock; across processes the store's uniqueness checks raise
    ConflictError and the loser re-reads the winner's key.

    A cached active key is checked against the store's status before each
    use, so a rotation made by another process takes effect on the next
    encrypt. Only the unwrapped key bytes are served from cache.

    The per-pair lock, generation counter and last rotation result are kept
    for every pair this manager has seen, for the lifetime of the manager.
    Long-lived processes serving an unbounded set of tenants should recycle
    managers.
    """

    def __init__(
        self,
        store: KeyStore,
        master_key_source: MasterKeySource,
        cache: Optional[KeyCache] = None,
        audit: Optional[AuditLogger] = None,
        reencryption: Optional[ReencryptionEmitter] = None,
    ) -> None:
        """
        Args:
            store: Key metadata and wrapped material backend
            master_key_source: Supplies the key that wraps DEKs
            cache: DEK cache (a fresh one is created if omitted)
            audit: Audit logger (in-memory sink if omitted)
            reencryption: Receives re-encryption tasks after rotation

        Raises:
            FatalConfigurationError: If the master key is unavailable
        """
        self._store = store
        self._master_key = _load_master_key(master_key_source)
        self._cache = cache if cache is not None else KeyCache()
        self._audit = audit if audit is not None else AuditLogger()
        self._reencryption = (
            reencryption if reencryption is not None else NullReencryptionEmitter()
        )
        self._locks: Dict[_Pair, asyncio.Lock] = {}
        self._generations: Dict[_Pair, int] = {}
        self._last_rotation: Dict[_Pair, RotationResult] = {}

    @property
    def cache(self) -> KeyCache:
        return self._cache

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def store(self) -> KeyStore:
        return self._store

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_or_create_active_key(
        self, tenant_id: str, purpose: PurposeLike
    ) -> ActiveKey:
        """
        Get the active DEK for a pair, creating version 1 on first use.

        Args:
            tenant_id: Tenant identifier
            purpose: Key purpose

        Returns:
            ActiveKey with key bytes, key_id and version

        Raises:
            ParameterError: If tenant or purpose is invalid
            TransientStoreError: If the store is unavailable
        """
        tenant_id, purpose = _normalize(tenant_id, purpose)

        cached = self._cache.get(tenant_id, purpose, ACTIVE)
        if cached is not None and await self._still_active(tenant_id, purpose, cached):
            return ActiveKey(cached.key, cached.key_id, cached.version)

        async with self._lock_for(tenant_id, purpose):
            cached = self._cache.get(tenant_id, purpose, ACTIVE)
            if cached is not None and await self._still_active(tenant_id, purpose, cached):
                return ActiveKey(cached.key, cached.key_id, cached.version)

            with _store_errors("active key lookup"):
                meta = await self._store.get_active_key_metadata(tenant_id, purpose)

            if meta is None:
                entry = await self._create_first_key(tenant_id, purpose)
            else:
                entry = CachedKey(await self._unwrap(meta), meta.key_id, meta.version)

            self._remember_active(tenant_id, purpose, entry)
            return ActiveKey(entry.key, entry.key_id, entry.version)

    async def get_key_by_version(
        self, tenant_id: str, purpose: PurposeLike, version: int
    ) -> SecureKey:
        """
        Resolve any retained key version for decryption.

        Raises:
            KeyNotFoundError: If the version does not exist
        """
        return (await self.resolve_key(tenant_id, purpose, version)).key

    async def resolve_key(
        self, tenant_id: str, purpose: PurposeLike, version: int
    ) -> CachedKey:
        """Like get_key_by_version, but also returns the key_id."""
        tenant_id, purpose = _normalize(tenant_id, purpose)
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise KeyNotFoundError(f"Invalid key version: {version!r}")

        cached = self._cache.get(tenant_id, purpose, version)
        if cached is not None:
            return cached

        with _store_errors("key version lookup"):
            meta = await self._store.get_key_metadata_by_version(tenant_id, purpose, version)
        if meta is None:
            raise KeyNotFoundError(f"Key {tenant_id}/{purpose} version {version}")

        entry = CachedKey(await self._unwrap(meta), meta.key_id, meta.version)
        self._cache.put(tenant_id, purpose, version, entry)
        return entry

    async def list_keys(self, tenant_id: str, purpose: PurposeLike) -> List[EncryptionKey]:
        """All key versions of a pair, oldest first."""
        tenant_id, purpose = _normalize(tenant_id, purpose)
        with _store_errors("key listing"):
            return await self._store.list_key_metadata(tenant_id, purpose)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate(self, tenant_id: str, purpose: PurposeLike) -> RotationResult:
        """
        Create version N+1 as ACTIVE and demote version N to ROTATING.

        Callers that queue up behind an in-flight rotation of the same pair
        get that rotation's result back (performed=False) instead of
        rotating again.

        Returns:
            RotationResult with old and new key ids/versions

        Raises:
            TransientStoreError: If the store is unavailable
            ConflictError: If another process rotated and the new head
                cannot be read back
        """
        tenant_id, purpose = _normalize(tenant_id, purpose)
        pair = (tenant_id, purpose)
        generation = self._generations.get(pair, 0)

        async with self._lock_for(tenant_id, purpose):
            if self._generations.get(pair, 0) != generation:
                previous = self._last_rotation[pair]
                logger.info("Rotation of %s/%s coalesced into %s", tenant_id, purpose, previous)
                return _as_followup(previous)

            with _store_errors("rotation"):
                current = await self._store.get_active_key_metadata(tenant_id, purpose)

            if current is None:
                entry = await self._create_first_key(tenant_id, purpose)
                self._remember_active(tenant_id, purpose, entry)
                result = RotationResult(
                    tenant_id=tenant_id,
                    purpose=purpose,
                    old_key_id=None,
                    new_key_id=entry.key_id,
                    old_version=None,
                    new_version=entry.version,
                )
                await self._audit.log(tenant_id, AuditOperation.ROTATE, entry.key_id, entry.version)
                return self._record_rotation(pair, result)

            new_key = SecureKey.generate()
            new_meta = EncryptionKey.new(tenant_id, purpose, version=current.version + 1)
            wrapped = EnvelopeCipher.wrap_key(self._master_key, new_key, new_meta.key_id)

            try:
                with _store_errors("rotation"):
                    await self._store.rotate_active_key(current.key_id, new_meta, wrapped)
            except ConflictError as e:
                await self._audit.log(
                    tenant_id,
                    AuditOperation.ROTATE,
                    new_meta.key_id,
                    new_meta.version,
                    AuditOutcome.FAILURE,
                    e,
                )
                return await self._reread_after_conflict(tenant_id, purpose, current)
            except EnvelopeError as e:
                await self._audit.log(
                    tenant_id,
                    AuditOperation.ROTATE,
                    new_meta.key_id,
                    new_meta.version,
                    AuditOutcome.FAILURE,
                    e,
                )
                raise

            # No await between the store flip and the cache update.
            self._cache.invalidate_active(tenant_id, purpose)
            self._remember_active(
                tenant_id, purpose, CachedKey(new_key, new_meta.key_id, new_meta.version)
            )

            result = RotationResult(
                tenant_id=tenant_id,
                purpose=purpose,
                old_key_id=current.key_id,
                new_key_id=new_meta.key_id,
                old_version=current.version,
                new_version=new_meta.version,
            )
            logger.info("Rotated %s", result)
            await self._audit.log(
                tenant_id, AuditOperation.ROTATE, new_meta.key_id, new_meta.version
            )
            self._record_rotation(pair, result)

        await self._signal_reencryption(result)
        return result

    async def complete_rotation(
        self, tenant_id: str, purpose: PurposeLike, old_key_id: str
    ) -> EncryptionKey:
        """
        Retire a ROTATING key once its data has been re-encrypted.

        Idempotent for a key that is already RETIRED.

        Raises:
            KeyNotFoundError: If the key does not belong to the pair
            InvalidKeyStateError: If the key is still ACTIVE
        """
        tenant_id, purpose = _normalize(tenant_id, purpose)

        with _store_errors("rotation completion"):
            meta = await self._store.get_key_metadata(old_key_id)
        if meta is None or meta.tenant_id != tenant_id or meta.purpose != purpose:
            raise KeyNotFoundError(f"Key {old_key_id} for {tenant_id}/{purpose}")

        if meta.status == KeyStatus.RETIRED:
            return meta
        if meta.status == KeyStatus.ACTIVE:
            raise InvalidKeyStateError(f"Key {old_key_id} is still active")

        try:
            with _store_errors("rotation completion"):
                retired = await self._store.update_key_status(old_key_id, KeyStatus.RETIRED)
        except EnvelopeError as e:
            await self._audit.log(
                tenant_id, AuditOperation.RETIRE, old_key_id, meta.version, AuditOutcome.FAILURE, e
            )
            raise

        logger.info("Retired key %s (%s/%s v%d)", old_key_id, tenant_id, purpose, meta.version)
        await self._audit.log(tenant_id, AuditOperation.RETIRE, old_key_id, meta.version)
        return retired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, tenant_id: str, purpose: KeyPurpose) -> asyncio.Lock:
        return self._locks.setdefault((tenant_id, purpose), asyncio.Lock())

    async def _still_active(
        self, tenant_id: str, purpose: KeyPurpose, cached: CachedKey
    ) -> bool:
        """
        Check a cached ACTIVE pointer against the store's status.

        Another process may have rotated the pair; a demoted key is dropped
        from the ACTIVE slot (its version entry stays for decryption).
        """
        with _store_errors("active key check"):
            meta = await self._store.get_key_metadata(cached.key_id)
        if meta is not None and meta.status == KeyStatus.ACTIVE:
            return True
        logger.info(
            "Cached active key %s for %s/%s is no longer active, re-reading",
            cached.key_id,
            tenant_id,
            purpose,
        )
        self._cache.invalidate_active(tenant_id, purpose)
        return False

    def _remember_active(self, tenant_id: str, purpose: KeyPurpose, entry: CachedKey) -> None:
        self._cache.put(tenant_id, purpose, ACTIVE, entry)
        self._cache.put(tenant_id, purpose, entry.version, entry)

    def _record_rotation(self, pair: _Pair, result: RotationResult) -> RotationResult:
        self._generations[pair] = self._generations.get(pair, 0) + 1
        self._last_rotation[pair] = result
        return result

    async def _create_first_key(self, tenant_id: str, purpose: KeyPurpose) -> CachedKey:
        """Create the first active key of a pair; adopt the winner's key on conflict."""
        with _store_errors("key creation"):
            existing = await self._store.list_key_metadata(tenant_id, purpose)
        version = max((k.version for k in existing), default=0) + 1

        key = SecureKey.generate()
        meta = EncryptionKey.new(tenant_id, purpose, version=version)
        wrapped = EnvelopeCipher.wrap_key(self._master_key, key, meta.key_id)

        try:
            with _store_errors("key creation"):
                await self._store.create_key(meta, wrapped)
        except ConflictError as e:
            await self._audit.log(
                tenant_id, AuditOperation.CREATE_KEY, meta.key_id, version, AuditOutcome.FAILURE, e
            )
            logger.info("Lost key creation race for %s/%s, re-reading", tenant_id, purpose)
            with _store_errors("active key lookup"):
                winner = await self._store.get_active_key_metadata(tenant_id, purpose)
            if winner is None:
                raise ConflictError(
                    f"Key creation for {tenant_id}/{purpose} conflicted but no active key exists"
                ) from e
            return CachedKey(await self._unwrap(winner), winner.key_id, winner.version)
        except EnvelopeError as e:
            await self._audit.log(
                tenant_id, AuditOperation.CREATE_KEY, meta.key_id, version, AuditOutcome.FAILURE, e
            )
            raise

        logger.info("Created key %s (%s/%s v%d)", meta.key_id, tenant_id, purpose, version)
        await self._audit.log(tenant_id, AuditOperation.CREATE_KEY, meta.key_id, version)
        return CachedKey(key, meta.key_id, version)

    async def _reread_after_conflict(
        self, tenant_id: str, purpose: KeyPurpose, stale: EncryptionKey
    ) -> RotationResult:
        """Another process rotated first; report its head without rotating again."""
        self._cache.invalidate_active(tenant_id, purpose)
        with _store_errors("active key lookup"):
            head = await self._store.get_active_key_metadata(tenant_id, purpose)
        if head is None:
            raise ConflictError(f"Rotation of {tenant_id}/{purpose} conflicted")

        self._remember_active(
            tenant_id, purpose, CachedKey(await self._unwrap(head), head.key_id, head.version)
        )
        logger.info(
            "Rotation of %s/%s lost a race; active is now v%d", tenant_id, purpose, head.version
        )
        return RotationResult(
            tenant_id=tenant_id,
            purpose=purpose,
            old_key_id=stale.key_id,
            new_key_id=head.key_id,
            old_version=stale.version,
            new_version=head.version,
            performed=False,
        )

    async def _unwrap(self, meta: EncryptionKey) -> SecureKey:
        with _store_errors("wrapped key lookup"):
            wrapped = await self._store.get_wrapped_material(meta.key_id)
        if wrapped is None:
            raise KeyNotFoundError(f"Wrapped material for key {meta.key_id}")
        return EnvelopeCipher.unwrap_key(self._master_key, wrapped, meta.key_id)

    async def _signal_reencryption(self, result: RotationResult) -> None:
        if result.old_key_id is None:
            return
        try:
            await self._reencryption.emit_reencryption_task(
                result.tenant_id, result.purpose, result.old_key_id, result.new_key_id
            )
        except Exception:
            # Rotation is committed; the worker can be re-triggered from list_keys().
            logger.exception(
                "Failed to emit re-encryption task for %s/%s (old=%s new=%s)",
                result.tenant_id,
                result.purpose,
                result.old_key_id,
                result.new_key_id,
            )


def _normalize(tenant_id: str, purpose: PurposeLike) -> _Pair:
    if not isinstance(tenant_id, str) or not tenant_id:
        raise ParameterError("tenant_id must be a non-empty string")
    return tenant_id, KeyPurpose.from_str(purpose)


def _as_followup(result: RotationResult) -> RotationResult:
    return replace(result, performed=False)


def _load_master_key(source: MasterKeySource) -> SecureKey:
    try:
        key = source.get_master_key()
    except FatalConfigurationError:
        raise
    except Exception as e:
        raise FatalConfigurationError(
            f"Master key source unavailable: {type(e).__name__}"
        ) from e
    if not isinstance(key, SecureKey) or len(key) != AES_256_KEY_SIZE:
        raise FatalConfigurationError("Master key must be a 32-byte SecureKey")
    return key
