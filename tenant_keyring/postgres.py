"""
PostgreSQL-backed key store and audit sink.

This module provides:
- SCHEMA_SQL / create_schema(): Tables for key metadata, wrapped material
  and audit events
- PostgresKeyStore: KeyStore on an asyncpg pool
- PostgresAuditSink: AuditSink appending to key_audit_events

Uniqueness is enforced by the database:
- UNIQUE (tenant_id, purpose, version)
- partial UNIQUE index on (tenant_id, purpose) WHERE status = 'active'
Violations surface as ConflictError; every other driver or connection
failure surfaces as TransientStoreError.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

import asyncpg

from .audit import AuditSink
from .errors import ConflictError, EnvelopeError, KeyNotFoundError, TransientStoreError
from .models import AuditEvent, EncryptionKey, KeyPurpose, KeyStatus
from .storage import KeyStore

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenant_keys (
    key_id      TEXT PRIMARY KEY,
    tenant_id   TEXT NOT NULL,
    purpose     TEXT NOT NULL CHECK (purpose IN ('pii', 'credentials', 'tokens', 'general')),
    version     INTEGER NOT NULL CHECK (version >= 1),
    status      TEXT NOT NULL CHECK (status IN ('active', 'rotating', 'retired')),
    algorithm   TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL,
    retired_at  TIMESTAMPTZ,
    UNIQUE (tenant_id, purpose, version)
);

CREATE UNIQUE INDEX IF NOT EXISTS tenant_keys_one_active
    ON tenant_keys (tenant_id, purpose)
    WHERE status = 'active';

CREATE TABLE IF NOT EXISTS tenant_key_material (
    key_id       TEXT PRIMARY KEY REFERENCES tenant_keys (key_id),
    wrapped_key  BYTEA NOT NULL
);

CREATE TABLE IF NOT EXISTS key_audit_events (
    event_id     TEXT PRIMARY KEY,
    tenant_id    TEXT NOT NULL,
    operation    TEXT NOT NULL,
    key_id       TEXT,
    version      INTEGER,
    outcome      TEXT NOT NULL,
    error        TEXT,
    occurred_at  TIMESTAMPTZ NOT NULL
);
"""

_KEY_COLUMNS = (
    "key_id, tenant_id, purpose, version, status, algorithm, created_at, retired_at"
)


async def create_schema(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist."""
    with _db_errors("schema creation"):
        await pool.execute(SCHEMA_SQL)


@contextmanager
def _db_errors(action: str) -> Iterator[None]:
    try:
        yield
    except EnvelopeError:
        raise
    except asyncpg.UniqueViolationError as e:
        raise ConflictError(f"Uniqueness violated during {action}") from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise TransientStoreError(f"Failed during {action}: {type(e).__name__}") from e


class PostgresKeyStore(KeyStore):
    """
    PostgreSQL storage backend for key metadata and wrapped material.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def create_key_metadata(self, key: EncryptionKey) -> None:
        with _db_errors("key metadata insert"):
            await self._insert_key(self._pool, key)

    async def update_key_status(self, key_id: str, status: KeyStatus) -> EncryptionKey:
        with _db_errors("key status update"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT {_KEY_COLUMNS} FROM tenant_keys WHERE key_id = $1 FOR UPDATE",
                        key_id,
                    )
                    if row is None:
                        raise KeyNotFoundError(f"Key {key_id}")
                    updated = self._row_to_key(row).with_status(status)
                    await conn.execute(
                        "UPDATE tenant_keys SET status = $2, retired_at = $3 WHERE key_id = $1",
                        key_id,
                        updated.status.value,
                        updated.retired_at,
                    )
                    return updated

    async def get_active_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> Optional[EncryptionKey]:
        query = f"""
            SELECT {_KEY_COLUMNS} FROM tenant_keys
            WHERE tenant_id = $1 AND purpose = $2 AND status = 'active'
        """
        with _db_errors("active key lookup"):
            row = await self._pool.fetchrow(query, tenant_id, purpose.value)
        return self._row_to_key(row) if row is not None else None

    async def get_key_metadata_by_version(
        self, tenant_id: str, purpose: KeyPurpose, version: int
    ) -> Optional[EncryptionKey]:
        query = f"""
            SELECT {_KEY_COLUMNS} FROM tenant_keys
            WHERE tenant_id = $1 AND purpose = $2 AND version = $3
        """
        with _db_errors("key version lookup"):
            row = await self._pool.fetchrow(query, tenant_id, purpose.value, version)
        return self._row_to_key(row) if row is not None else None

    async def get_key_metadata(self, key_id: str) -> Optional[EncryptionKey]:
        with _db_errors("key lookup"):
            row = await self._pool.fetchrow(
                f"SELECT {_KEY_COLUMNS} FROM tenant_keys WHERE key_id = $1", key_id
            )
        return self._row_to_key(row) if row is not None else None

    async def list_key_metadata(
        self, tenant_id: str, purpose: KeyPurpose
    ) -> List[EncryptionKey]:
        query = f"""
            SELECT {_KEY_COLUMNS} FROM tenant_keys
            WHERE tenant_id = $1 AND purpose = $2
            ORDER BY version
        """
        with _db_errors("key listing"):
            rows = await self._pool.fetch(query, tenant_id, purpose.value)
        return [self._row_to_key(row) for row in rows]

    async def store_wrapped_material(self, key_id: str, wrapped: bytes) -> None:
        query = """
            INSERT INTO tenant_key_material (key_id, wrapped_key) VALUES ($1, $2)
            ON CONFLICT (key_id) DO UPDATE SET wrapped_key = EXCLUDED.wrapped_key
        """
        with _db_errors("wrapped material insert"):
            await self._pool.execute(query, key_id, wrapped)

    async def get_wrapped_material(self, key_id: str) -> Optional[bytes]:
        with _db_errors("wrapped material lookup"):
            value = await self._pool.fetchval(
                "SELECT wrapped_key FROM tenant_key_material WHERE key_id = $1", key_id
            )
        return bytes(value) if value is not None else None

    async def create_key(self, key: EncryptionKey, wrapped: bytes) -> None:
        with _db_errors("key creation"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await self._insert_key(conn, key)
                    await conn.execute(
                        "INSERT INTO tenant_key_material (key_id, wrapped_key) VALUES ($1, $2)",
                        key.key_id,
                        wrapped,
                    )

    async def rotate_active_key(
        self,
        expected_active_key_id: str,
        new_key: EncryptionKey,
        wrapped: bytes,
    ) -> EncryptionKey:
        with _db_errors("rotation"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        SELECT {_KEY_COLUMNS} FROM tenant_keys
                        WHERE tenant_id = $1 AND purpose = $2 AND status = 'active'
                        FOR UPDATE
                        """,
                        new_key.tenant_id,
                        new_key.purpose.value,
                    )
                    if row is None or row["key_id"] != expected_active_key_id:
                        raise ConflictError(
                            f"Active key for {new_key.tenant_id}/{new_key.purpose} has changed"
                        )
                    demoted = self._row_to_key(row).with_status(KeyStatus.ROTATING)
                    await conn.execute(
                        "UPDATE tenant_keys SET status = $2 WHERE key_id = $1",
                        demoted.key_id,
                        demoted.status.value,
                    )
                    await self._insert_key(conn, new_key)
                    await conn.execute(
                        "INSERT INTO tenant_key_material (key_id, wrapped_key) VALUES ($1, $2)",
                        new_key.key_id,
                        wrapped,
                    )
                    return demoted

    @staticmethod
    async def _insert_key(conn, key: EncryptionKey) -> None:
        await conn.execute(
            f"""
            INSERT INTO tenant_keys ({_KEY_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            key.key_id,
            key.tenant_id,
            key.purpose.value,
            key.version,
            key.status.value,
            key.algorithm,
            key.created_at,
            key.retired_at,
        )

    @staticmethod
    def _row_to_key(row: asyncpg.Record) -> EncryptionKey:
        """Convert database row to EncryptionKey."""
        return EncryptionKey(
            key_id=row["key_id"],
            tenant_id=row["tenant_id"],
            purpose=KeyPurpose.from_str(row["purpose"]),
            version=row["version"],
            status=KeyStatus.from_str(row["status"]),
            created_at=row["created_at"],
            retired_at=row["retired_at"],
            algorithm=row["algorithm"],
        )


class PostgresAuditSink(AuditSink):
    """Appends audit events to key_audit_events. Rows are never updated."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def write(self, event: AuditEvent) -> None:
        query = """
            INSERT INTO key_audit_events
                (event_id, tenant_id, operation, key_id, version, outcome, error, occurred_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """
        with _db_errors("audit insert"):
            await self._pool.execute(
                query,
                event.event_id,
                event.tenant_id,
                event.operation.value,
                event.key_id,
                event.version,
                event.outcome.value,
                event.error,
                event.timestamp,
            )
