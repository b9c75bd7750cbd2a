"""
Pytest configuration and fixtures for tenant keyring tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from tenant_keyring import (
    AuditLogger,
    EnvelopeService,
    InMemoryAuditSink,
    InMemoryKeyStore,
    KeyCache,
    KeyLifecycleManager,
    PostgresKeyStore,
    QueueReencryptionEmitter,
    StaticMasterKeySource,
    create_schema,
)


@pytest.fixture
def memory_store() -> InMemoryKeyStore:
    """Create an in-memory key store for testing."""
    return InMemoryKeyStore()


@pytest.fixture
def master_source() -> StaticMasterKeySource:
    return StaticMasterKeySource(bytes(range(32)))


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def reencryption() -> QueueReencryptionEmitter:
    return QueueReencryptionEmitter()


@pytest.fixture
def manager(
    memory_store: InMemoryKeyStore,
    master_source: StaticMasterKeySource,
    audit_sink: InMemoryAuditSink,
    reencryption: QueueReencryptionEmitter,
) -> KeyLifecycleManager:
    """Manager wired to fresh in-memory components."""
    return KeyLifecycleManager(
        store=memory_store,
        master_key_source=master_source,
        cache=KeyCache(),
        audit=AuditLogger(audit_sink),
        reencryption=reencryption,
    )


@pytest.fixture
def service(manager: KeyLifecycleManager) -> EnvelopeService:
    return EnvelopeService(manager)


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await create_schema(pool)
    await pool.execute("TRUNCATE TABLE tenant_key_material, tenant_keys, key_audit_events")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_store(pg_pool: asyncpg.Pool) -> PostgresKeyStore:
    """Create a PostgreSQL key store for testing."""
    return PostgresKeyStore(pg_pool)
