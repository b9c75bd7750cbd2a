"""
Tenant Keyring Benchmark CLI.

Usage:
    tenant-keyring-benchmark [--tenants N] [--ops N]

Or run directly:
    python -m tenant_keyring.benchmark

Uses PostgreSQL when DATABASE_URL is set (environment or .env file), the
in-memory store otherwise. The master key comes from TENANT_KEYRING_MASTER_KEY;
without one a throwaway key is generated.
"""

from __future__ import annotations

import argparse
import asyncio
import time
from typing import List, Optional

import asyncpg

from tenant_keyring.audit import AuditLogger, InMemoryAuditSink
from tenant_keyring.cache import KeyCache
from tenant_keyring.config import Settings, configure_logging
from tenant_keyring.manager import KeyLifecycleManager
from tenant_keyring.master_key import (
    EnvironmentMasterKeySource,
    MasterKeySource,
    StaticMasterKeySource,
)
from tenant_keyring.models import EncryptedPayload, EncryptionContext, KeyPurpose
from tenant_keyring.pii import hash_identifier
from tenant_keyring.postgres import PostgresKeyStore, create_schema
from tenant_keyring.service import EnvelopeService
from tenant_keyring.storage import InMemoryKeyStore, KeyStore


def _report(label: str, count: int, seconds: float) -> None:
    rate = count / seconds if seconds > 0 else float("inf")
    print(f"[PERF] {label:<28} {count:>7} ops  {seconds * 1000:>10.3f}ms  {rate:>12.2f} ops/sec")


async def run_benchmark(tenants: int, ops: int) -> None:
    """Run the benchmark."""
    print("=== Tenant Keyring Benchmark ===\n")

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    pool: Optional[asyncpg.Pool] = None
    store: KeyStore
    if settings.database_url:
        pool = await asyncpg.create_pool(settings.database_url)
        await create_schema(pool)
        store = PostgresKeyStore(pool)
        print("[STARTUP] Using PostgreSQL key store")
    else:
        store = InMemoryKeyStore()
        print("[STARTUP] DATABASE_URL not set, using in-memory key store")

    master: MasterKeySource
    if settings.master_key:
        master = EnvironmentMasterKeySource(value=settings.master_key)
    else:
        master = StaticMasterKeySource.generate()
        print("[STARTUP] No master key configured, generated a throwaway key")

    audit_sink = InMemoryAuditSink()
    manager = KeyLifecycleManager(
        store=store,
        master_key_source=master,
        cache=KeyCache(
            settings.cache_max_entries,
            settings.cache_ttl_seconds,
            settings.cache_active_ttl_seconds,
        ),
        audit=AuditLogger(audit_sink),
    )
    service = EnvelopeService(manager)
    tenant_ids = [f"bench-tenant-{i}" for i in range(tenants)]
    plaintext = b"Sensitive data protected by envelope encryption"

    try:
        start = time.perf_counter()
        for tenant_id in tenant_ids:
            await manager.get_or_create_active_key(tenant_id, KeyPurpose.PII)
        _report("key creation", tenants, time.perf_counter() - start)

        payloads: List[EncryptedPayload] = []
        start = time.perf_counter()
        for i in range(ops):
            context = EncryptionContext(tenant_ids[i % tenants], KeyPurpose.PII)
            payloads.append(await service.encrypt(plaintext, context))
        _report("encrypt (cached key)", ops, time.perf_counter() - start)

        start = time.perf_counter()
        for i, payload in enumerate(payloads):
            await service.decrypt(payload, tenant_ids[i % tenants])
        _report("decrypt (cached key)", ops, time.perf_counter() - start)

        start = time.perf_counter()
        for tenant_id in tenant_ids:
            await manager.rotate(tenant_id, KeyPurpose.PII)
        _report("rotation", tenants, time.perf_counter() - start)

        manager.cache.clear()
        start = time.perf_counter()
        for i, payload in enumerate(payloads):
            await service.decrypt(payload, tenant_ids[i % tenants])
        _report("decrypt after rotation", ops, time.perf_counter() - start)

        salt = settings.hash_salt or "benchmark-salt"
        start = time.perf_counter()
        for i in range(ops):
            hash_identifier(f"user-{i}@example.com", salt)
        _report("hash_identifier", ops, time.perf_counter() - start)

        print(f"\n[OK] Cache: {manager.cache.stats()}")
        print(f"[OK] Audit events: {len(audit_sink)}")
    finally:
        if pool is not None:
            await pool.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the benchmark CLI."""
    parser = argparse.ArgumentParser(description="Tenant Keyring benchmark")
    parser.add_argument("--tenants", type=int, default=25, help="number of tenants (default: 25)")
    parser.add_argument("--ops", type=int, default=1000, help="encryptions to time (default: 1000)")
    args = parser.parse_args(argv)

    if args.tenants < 1 or args.ops < 1:
        parser.error("--tenants and --ops must be positive")

    asyncio.run(run_benchmark(args.tenants, args.ops))


if __name__ == "__main__":
    main()
