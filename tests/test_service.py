"""End-to-end tests for the envelope encryption service."""

import asyncio
from dataclasses import replace

import pytest

from tenant_keyring import (
    AuditLogger,
    AuditOperation,
    AuditOutcome,
    EncryptedPayload,
    EncryptionContext,
    EnvelopeService,
    FatalConfigurationError,
    InMemoryAuditSink,
    InMemoryKeyStore,
    IntegrityError,
    KeyCache,
    KeyLifecycleManager,
    KeyNotFoundError,
    KeyPurpose,
    KeyStatus,
    ParameterError,
    Settings,
)

PII = EncryptionContext("tenant-a", KeyPurpose.PII, field_name="email")


class BlockingStore(InMemoryKeyStore):
    """Holds key lookups until released, once blocking is switched on."""

    def __init__(self) -> None:
        super().__init__()
        self.blocking = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def _pause(self) -> None:
        if self.blocking:
            self.entered.set()
            await self.release.wait()

    async def get_active_key_metadata(self, tenant_id, purpose):
        await self._pause()
        return await super().get_active_key_metadata(tenant_id, purpose)

    async def get_key_metadata_by_version(self, tenant_id, purpose, version):
        await self._pause()
        return await super().get_key_metadata_by_version(tenant_id, purpose, version)


class YieldingStore(InMemoryKeyStore):
    """Gives other tasks a turn in the middle of rotations and status checks."""

    async def rotate_active_key(self, expected_active_key_id, new_key, wrapped):
        await asyncio.sleep(0)
        demoted = await super().rotate_active_key(expected_active_key_id, new_key, wrapped)
        await asyncio.sleep(0)
        return demoted

    async def get_key_metadata(self, key_id):
        await asyncio.sleep(0)
        return await super().get_key_metadata(key_id)


def make_service(store, master_source, sink=None) -> EnvelopeService:
    return EnvelopeService(
        KeyLifecycleManager(
            store=store,
            master_key_source=master_source,
            cache=KeyCache(),
            audit=AuditLogger(sink or InMemoryAuditSink()),
        )
    )


async def test_roundtrip(service):
    payload = await service.encrypt(b"jane@example.com", PII)

    assert payload.key_version == 1
    assert payload.purpose is KeyPurpose.PII
    assert payload.field_name == "email"
    assert payload.ciphertext != b"jane@example.com"
    assert await service.decrypt(payload, "tenant-a") == b"jane@example.com"


async def test_same_plaintext_encrypts_differently(service):
    a = await service.encrypt(b"same", PII)
    b = await service.encrypt(b"same", PII)
    assert a.iv != b.iv
    assert a.ciphertext != b.ciphertext


async def test_rotation_keeps_old_data_readable(service):
    before = await service.encrypt(b"written before rotation", PII)

    await service.manager.rotate("tenant-a", KeyPurpose.PII)
    after = await service.encrypt(b"written after rotation", PII)

    assert after.key_version == 2
    assert after.key_id != before.key_id
    assert await service.decrypt(before, "tenant-a") == b"written before rotation"
    assert await service.decrypt(after, "tenant-a") == b"written after rotation"


async def test_retired_key_still_decrypts(service):
    before = await service.encrypt(b"old", PII)
    result = await service.manager.rotate("tenant-a", KeyPurpose.PII)
    await service.manager.complete_rotation("tenant-a", KeyPurpose.PII, result.old_key_id)
    service.manager.cache.clear()

    assert await service.decrypt(before, "tenant-a") == b"old"


async def test_tampered_ciphertext(service):
    payload = await service.encrypt(b"secret", PII)
    flipped = bytes([payload.ciphertext[0] ^ 0x01]) + payload.ciphertext[1:]

    with pytest.raises(IntegrityError):
        await service.decrypt(replace(payload, ciphertext=flipped), "tenant-a")


async def test_tampered_key_id(service):
    payload = await service.encrypt(b"secret", PII)
    with pytest.raises(IntegrityError):
        await service.decrypt(replace(payload, key_id="someone-else"), "tenant-a")


async def test_other_tenant_without_keys_cannot_decrypt(service):
    payload = await service.encrypt(b"secret", PII)
    with pytest.raises(KeyNotFoundError):
        await service.decrypt(payload, "tenant-b")


async def test_other_tenant_with_keys_cannot_decrypt(service):
    payload = await service.encrypt(b"secret", PII)
    await service.encrypt(b"b's own data", EncryptionContext("tenant-b", KeyPurpose.PII))

    with pytest.raises(IntegrityError):
        await service.decrypt(payload, "tenant-b")


async def test_purpose_mismatch_fails(service):
    payload = await service.encrypt(b"secret", PII)
    await service.encrypt(b"token", EncryptionContext("tenant-a", KeyPurpose.TOKENS))

    with pytest.raises(IntegrityError):
        await service.decrypt(replace(payload, purpose=KeyPurpose.TOKENS), "tenant-a")


async def test_one_audit_event_per_operation(service, audit_sink):
    payload = await service.encrypt(b"data", PII)
    await service.decrypt(payload, "tenant-a")

    encrypts = audit_sink.query(operation=AuditOperation.ENCRYPT)
    decrypts = audit_sink.query(operation=AuditOperation.DECRYPT)
    assert len(encrypts) == 1
    assert len(decrypts) == 1
    assert encrypts[0].key_id == payload.key_id
    assert encrypts[0].version == 1
    assert decrypts[0].outcome == AuditOutcome.SUCCESS


async def test_failed_decrypt_is_audited(service, audit_sink):
    payload = await service.encrypt(b"data", PII)

    with pytest.raises(IntegrityError):
        await service.decrypt(replace(payload, auth_tag=bytes(16)), "tenant-a")

    failures = audit_sink.query(operation=AuditOperation.DECRYPT, outcome=AuditOutcome.FAILURE)
    assert len(failures) == 1
    assert failures[0].error == "IntegrityError"
    assert failures[0].tenant_id == "tenant-a"


async def test_audit_outage_does_not_fail_encryption(service, monkeypatch):
    async def down(event):
        raise ConnectionError("audit store down")

    monkeypatch.setattr(service.audit.sink, "write", down)

    payload = await service.encrypt(b"data", PII)

    assert await service.decrypt(payload, "tenant-a") == b"data"
    assert service.audit.failure_count == 3


async def test_str_plaintext_rejected(service):
    with pytest.raises(ParameterError):
        await service.encrypt("not bytes", PII)  # type: ignore[arg-type]


async def test_unsupported_algorithm(service):
    payload = await service.encrypt(b"data", PII)
    with pytest.raises(ParameterError):
        await service.decrypt(replace(payload, algorithm="AES-128-CBC"), "tenant-a")


async def test_empty_plaintext(service):
    payload = await service.encrypt(b"", PII)
    assert await service.decrypt(payload, "tenant-a") == b""


async def test_text_helpers(service):
    payload = await service.encrypt_text("Zoë", "tenant-a", "pii", field_name="name")

    assert payload.field_name == "name"
    assert await service.decrypt_text(payload, "tenant-a") == "Zoë"


async def test_serialized_payload_decrypts(service):
    payload = await service.encrypt(b"stored in a column", PII)

    restored = EncryptedPayload.from_json(payload.to_json())

    assert await service.decrypt(restored, "tenant-a") == b"stored in a column"


async def test_concurrent_encrypts_share_first_key(service):
    payloads = await asyncio.gather(
        *(service.encrypt(f"value-{i}".encode(), PII) for i in range(25))
    )

    assert {p.key_id for p in payloads} == {payloads[0].key_id}
    keys = await service.manager.list_keys("tenant-a", KeyPurpose.PII)
    assert len(keys) == 1


async def test_from_settings():
    settings = Settings(master_key=bytes(range(32)).hex(), cache_max_entries=16)
    service = EnvelopeService.from_settings(settings)

    payload = await service.encrypt_text("hello", "tenant-a")

    assert await service.decrypt_text(payload, "tenant-a") == "hello"


async def test_from_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("TENANT_KEYRING_MASTER_KEY", bytes(range(32)).hex())

    service = EnvelopeService.from_settings()

    payload = await service.encrypt_text("hello", "tenant-a")
    assert await service.decrypt_text(payload, "tenant-a") == "hello"


def test_from_settings_without_master_key(monkeypatch):
    monkeypatch.delenv("TENANT_KEYRING_MASTER_KEY", raising=False)
    with pytest.raises(FatalConfigurationError):
        EnvelopeService.from_settings(Settings(master_key=None))


async def test_rotation_in_other_process_is_picked_up(service, memory_store, master_source):
    other = make_service(memory_store, master_source)
    before = await service.encrypt(b"v1 data", PII)

    result = await other.manager.rotate("tenant-a", KeyPurpose.PII)
    after = await service.encrypt(b"v2 data", PII)

    assert after.key_version == 2
    assert after.key_id == result.new_key_id
    assert await service.decrypt(before, "tenant-a") == b"v1 data"
    assert await other.decrypt(after, "tenant-a") == b"v2 data"


async def test_retired_key_never_encrypts_from_stale_cache(service, memory_store, master_source):
    other = make_service(memory_store, master_source)
    before = await service.encrypt(b"v1 data", PII)

    result = await other.manager.rotate("tenant-a", KeyPurpose.PII)
    await other.manager.complete_rotation("tenant-a", KeyPurpose.PII, result.old_key_id)
    after = await service.encrypt(b"v2 data", PII)

    meta = await memory_store.get_key_metadata(after.key_id)
    assert after.key_version == 2
    assert meta.status == KeyStatus.ACTIVE
    assert await service.decrypt(before, "tenant-a") == b"v1 data"


async def test_cancelled_encrypt_is_not_audited(master_source):
    store = BlockingStore()
    sink = InMemoryAuditSink()
    service = make_service(store, master_source, sink)
    store.blocking = True

    task = asyncio.create_task(service.encrypt(b"data", PII))
    await store.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert sink.query(operation=AuditOperation.ENCRYPT) == []
    assert len(sink) == 0
    assert await store.list_key_metadata("tenant-a", KeyPurpose.PII) == []


async def test_cancelled_decrypt_is_not_audited(master_source):
    store = BlockingStore()
    sink = InMemoryAuditSink()
    service = make_service(store, master_source, sink)
    payload = await service.encrypt(b"data", PII)
    service.manager.cache.clear()
    store.blocking = True

    task = asyncio.create_task(service.decrypt(payload, "tenant-a"))
    await store.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert sink.query(operation=AuditOperation.DECRYPT) == []

    store.blocking = False
    assert await service.decrypt(payload, "tenant-a") == b"data"


async def test_traffic_during_rotation_uses_old_or_new_key(master_source):
    service = make_service(YieldingStore(), master_source)
    seeds = [await service.encrypt(f"seed-{i}".encode(), PII) for i in range(10)]

    async def encrypt(i):
        return await service.encrypt(f"value-{i}".encode(), PII)

    async def decrypt(i):
        return await service.decrypt(seeds[i], "tenant-a")

    calls = []
    for i in range(10):
        calls.append(encrypt(i))
        calls.append(decrypt(i))
        if i == 4:
            calls.append(service.manager.rotate("tenant-a", KeyPurpose.PII))
    results = await asyncio.gather(*calls)

    payloads = [r for r in results if isinstance(r, EncryptedPayload)]
    assert len(payloads) == 10
    assert {p.key_version for p in payloads} <= {1, 2}
    assert [r for r in results if isinstance(r, bytes)] == [
        f"seed-{i}".encode() for i in range(10)
    ]
    for i, payload in enumerate(payloads):
        assert await service.decrypt(payload, "tenant-a") == f"value-{i}".encode()
    for i, seed in enumerate(seeds):
        assert await service.decrypt(seed, "tenant-a") == f"seed-{i}".encode()

    assert (await service.encrypt(b"later", PII)).key_version == 2


async def test_payload_with_string_purpose_decrypts(service):
    payload = await service.encrypt(b"data", PII)
    assert await service.decrypt(replace(payload, purpose="pii"), "tenant-a") == b"data"
