"""
In-memory cache of unwrapped DEKs.

Entries are keyed by (tenant, purpose, version) where version is either an
integer or the ACTIVE pointer. The cache is owned by one KeyLifecycleManager;
create a fresh instance per manager (and per test).
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from .crypto import SecureKey
from .models import KeyPurpose

ACTIVE = "active"
DEFAULT_ACTIVE_TTL_SECONDS = 60.0

VersionRef = Union[int, str]
_CacheKey = Tuple[str, KeyPurpose, VersionRef]


@dataclass(frozen=True)
class CachedKey:
    """An unwrapped DEK and the metadata needed to label ciphertexts."""

    key: SecureKey
    key_id: str
    version: int


class KeyCache:
    """
    Thread-safe LRU cache of unwrapped DEKs.

    Critical sections never await, so a plain threading.Lock serves both
    threads and asyncio tasks.
    """

    def __init__(
        self,
        max_entries: Optional[int] = 1024,
        ttl_seconds: Optional[float] = None,
        active_ttl_seconds: Optional[float] = DEFAULT_ACTIVE_TTL_SECONDS,
    ) -> None:
        """
        Args:
            max_entries: Upper bound on cached entries (None = unbounded)
            ttl_seconds: Lifetime of version entries (None = no expiry)
            active_ttl_seconds: Lifetime of ACTIVE pointers, so a rotation
                made by another process is picked up (None = no expiry)
        """
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._entries: "OrderedDict[_CacheKey, Tuple[CachedKey, float]]" = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._active_ttl = active_ttl_seconds
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(
        self, tenant_id: str, purpose: KeyPurpose, version: VersionRef = ACTIVE
    ) -> Optional[CachedKey]:
        """Return the cached entry or None on miss/expiry."""
        cache_key = (tenant_id, purpose, version)
        with self._lock:
            item = self._entries.get(cache_key)
            if item is None:
                self._misses += 1
                return None
            entry, stored_at = item
            ttl = self._active_ttl if version == ACTIVE else self._ttl
            if ttl is not None and time.monotonic() - stored_at > ttl:
                del self._entries[cache_key]
                self._misses += 1
                return None
            self._entries.move_to_end(cache_key)
            self._hits += 1
            return entry

    def put(
        self,
        tenant_id: str,
        purpose: KeyPurpose,
        version: VersionRef,
        entry: CachedKey,
    ) -> None:
        cache_key = (tenant_id, purpose, version)
        with self._lock:
            self._entries[cache_key] = (entry, time.monotonic())
            self._entries.move_to_end(cache_key)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)

    def invalidate_active(self, tenant_id: str, purpose: KeyPurpose) -> None:
        """Drop the ACTIVE pointer for a pair. Must follow every rotation."""
        with self._lock:
            self._entries.pop((tenant_id, purpose, ACTIVE), None)

    def invalidate(self, tenant_id: str, purpose: KeyPurpose) -> int:
        """Drop every cached version of a pair. Returns the number removed."""
        with self._lock:
            doomed = [k for k in self._entries if k[0] == tenant_id and k[1] == purpose]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
