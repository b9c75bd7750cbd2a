"""Tests for the in-memory key store."""

import asyncio

import pytest

from tenant_keyring import (
    ConflictError,
    EncryptionKey,
    InMemoryKeyStore,
    InvalidKeyStateError,
    KeyNotFoundError,
    KeyPurpose,
    KeyStatus,
)


def new_key(version: int = 1, tenant: str = "t1") -> EncryptionKey:
    return EncryptionKey.new(tenant, KeyPurpose.PII, version=version)


async def test_create_and_lookup(memory_store: InMemoryKeyStore):
    key = new_key()
    await memory_store.create_key(key, b"wrapped")

    assert await memory_store.get_active_key_metadata("t1", KeyPurpose.PII) == key
    assert await memory_store.get_key_metadata_by_version("t1", KeyPurpose.PII, 1) == key
    assert await memory_store.get_key_metadata(key.key_id) == key
    assert await memory_store.get_wrapped_material(key.key_id) == b"wrapped"


async def test_lookup_misses_return_none(memory_store: InMemoryKeyStore):
    assert await memory_store.get_active_key_metadata("t1", KeyPurpose.PII) is None
    assert await memory_store.get_key_metadata_by_version("t1", KeyPurpose.PII, 1) is None
    assert await memory_store.get_key_metadata("missing") is None
    assert await memory_store.get_wrapped_material("missing") is None


async def test_duplicate_version_conflicts(memory_store: InMemoryKeyStore):
    await memory_store.create_key(new_key(1), b"a")
    with pytest.raises(ConflictError):
        await memory_store.create_key(new_key(1), b"b")


async def test_second_active_key_conflicts(memory_store: InMemoryKeyStore):
    await memory_store.create_key(new_key(1), b"a")
    with pytest.raises(ConflictError):
        await memory_store.create_key_metadata(new_key(2))


async def test_parallel_creates_yield_one_record(memory_store: InMemoryKeyStore):
    results = await asyncio.gather(
        *(memory_store.create_key(new_key(1), b"x") for _ in range(20)),
        return_exceptions=True,
    )

    assert sum(r is None for r in results) == 1
    assert all(isinstance(r, ConflictError) for r in results if r is not None)
    assert len(await memory_store.list_key_metadata("t1", KeyPurpose.PII)) == 1


async def test_rotate_active_key(memory_store: InMemoryKeyStore):
    v1 = new_key(1)
    await memory_store.create_key(v1, b"v1")
    v2 = new_key(2)

    demoted = await memory_store.rotate_active_key(v1.key_id, v2, b"v2")

    assert demoted.key_id == v1.key_id
    assert demoted.status == KeyStatus.ROTATING
    assert await memory_store.get_active_key_metadata("t1", KeyPurpose.PII) == v2
    versions = await memory_store.list_key_metadata("t1", KeyPurpose.PII)
    assert [(k.version, k.status) for k in versions] == [
        (1, KeyStatus.ROTATING),
        (2, KeyStatus.ACTIVE),
    ]


async def test_rotate_with_stale_expectation_conflicts(memory_store: InMemoryKeyStore):
    v1 = new_key(1)
    await memory_store.create_key(v1, b"v1")
    await memory_store.rotate_active_key(v1.key_id, new_key(2), b"v2")

    with pytest.raises(ConflictError):
        await memory_store.rotate_active_key(v1.key_id, new_key(2), b"again")

    active = await memory_store.get_active_key_metadata("t1", KeyPurpose.PII)
    assert active is not None and active.version == 2


async def test_update_key_status_follows_lifecycle(memory_store: InMemoryKeyStore):
    v1 = new_key(1)
    await memory_store.create_key(v1, b"v1")

    with pytest.raises(InvalidKeyStateError):
        await memory_store.update_key_status(v1.key_id, KeyStatus.RETIRED)

    rotating = await memory_store.update_key_status(v1.key_id, KeyStatus.ROTATING)
    assert rotating.status == KeyStatus.ROTATING
    assert await memory_store.get_active_key_metadata("t1", KeyPurpose.PII) is None

    retired = await memory_store.update_key_status(v1.key_id, KeyStatus.RETIRED)
    assert retired.status == KeyStatus.RETIRED
    assert retired.retired_at is not None

    with pytest.raises(InvalidKeyStateError):
        await memory_store.update_key_status(v1.key_id, KeyStatus.ACTIVE)


async def test_update_missing_key(memory_store: InMemoryKeyStore):
    with pytest.raises(KeyNotFoundError):
        await memory_store.update_key_status("missing", KeyStatus.ROTATING)


async def test_tenants_are_separate(memory_store: InMemoryKeyStore):
    await memory_store.create_key(new_key(1, "t1"), b"a")
    await memory_store.create_key(new_key(1, "t2"), b"b")

    t1 = await memory_store.get_active_key_metadata("t1", KeyPurpose.PII)
    t2 = await memory_store.get_active_key_metadata("t2", KeyPurpose.PII)
    assert t1 is not None and t2 is not None
    assert t1.key_id != t2.key_id
