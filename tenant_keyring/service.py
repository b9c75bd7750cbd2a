"""
Public encrypt/decrypt surface.

Crypto flow for encrypt(plaintext, context):
1. Resolve the active DEK for (tenant, purpose) via KeyLifecycleManager
2. AES-256-GCM encrypt with AAD = (tenant, purpose, key_id, version)
3. Record one audit event, after the result is final

decrypt(payload, tenant) resolves the DEK by the payload's recorded version,
so data written before a rotation stays readable while it is migrated.
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Union

from .audit import AuditLogger, LoggingAuditSink
from .cache import KeyCache
from .config import Settings
from .crypto import ALGORITHM, EnvelopeCipher
from .errors import EnvelopeError, ParameterError
from .manager import ActiveKey, KeyLifecycleManager
from .master_key import EnvironmentMasterKeySource
from .models import (
    AuditOperation,
    AuditOutcome,
    EncryptedPayload,
    EncryptionContext,
    KeyPurpose,
)
from .reencryption import ReencryptionEmitter
from .storage import InMemoryKeyStore, KeyStore

logger = logging.getLogger(__name__)


def build_aad(tenant_id: str, purpose: KeyPurpose, key_id: str, version: int) -> bytes:
    """Associated data binding a ciphertext to its tenant, purpose and key."""
    return json.dumps(
        [tenant_id, purpose.value, key_id, version], separators=(",", ":")
    ).encode("utf-8")


class EnvelopeService:
    """
    Envelope encryption for application fields.

    The only entry points the rest of the system needs are encrypt() and
    decrypt(); key management is reachable through `manager`.
    """

    def __init__(self, manager: KeyLifecycleManager) -> None:
        self._manager = manager

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[KeyStore] = None,
        reencryption: Optional[ReencryptionEmitter] = None,
    ) -> EnvelopeService:
        """
        Wire a service from configuration.

        Args:
            settings: Loaded settings (read from the environment if omitted)
            store: Key store (in-memory if omitted)
            reencryption: Re-encryption emitter (log-only if omitted)

        Raises:
            FatalConfigurationError: If the master key is missing or invalid
        """
        settings = settings if settings is not None else Settings.from_env()
        manager = KeyLifecycleManager(
            store=store if store is not None else InMemoryKeyStore(),
            master_key_source=EnvironmentMasterKeySource(value=settings.master_key),
            cache=KeyCache(
                max_entries=settings.cache_max_entries,
                ttl_seconds=settings.cache_ttl_seconds,
                active_ttl_seconds=settings.cache_active_ttl_seconds,
            ),
            audit=AuditLogger(LoggingAuditSink()),
            reencryption=reencryption,
        )
        return cls(manager)

    @property
    def manager(self) -> KeyLifecycleManager:
        return self._manager

    @property
    def audit(self) -> AuditLogger:
        return self._manager.audit

    async def encrypt(
        self,
        plaintext: bytes,
        context: EncryptionContext,
    ) -> EncryptedPayload:
        """
        Encrypt data under the tenant's active key for the purpose.

        Args:
            plaintext: Data to encrypt
            context: Tenant, purpose and optional field name

        Returns:
            EncryptedPayload carrying key id/version, IV and tag

        Raises:
            ParameterError: If plaintext is not bytes
            TransientStoreError: If the key store is unavailable
        """
        if not isinstance(plaintext, (bytes, bytearray)):
            raise ParameterError("plaintext must be bytes; use encrypt_text() for str")

        tenant_id = context.tenant_id
        active: Optional[ActiveKey] = None
        try:
            active = await self._manager.get_or_create_active_key(tenant_id, context.purpose)
            result = EnvelopeCipher.encrypt(
                bytes(plaintext),
                active.key,
                build_aad(tenant_id, context.purpose, active.key_id, active.version),
            )
        except EnvelopeError as e:
            await self.audit.log(
                tenant_id,
                AuditOperation.ENCRYPT,
                active.key_id if active else None,
                active.version if active else None,
                AuditOutcome.FAILURE,
                e,
            )
            raise

        payload = EncryptedPayload(
            ciphertext=result.ciphertext,
            key_id=active.key_id,
            key_version=active.version,
            iv=result.iv,
            auth_tag=result.auth_tag,
            purpose=context.purpose,
            field_name=context.field_name,
        )
        await self.audit.log(tenant_id, AuditOperation.ENCRYPT, active.key_id, active.version)
        return payload

    async def decrypt(self, payload: EncryptedPayload, tenant_id: str) -> bytes:
        """
        Decrypt a payload produced by encrypt() for the same tenant.

        Raises:
            KeyNotFoundError: If the tenant has no such key version
            IntegrityError: If the payload was tampered with or belongs to
                another tenant
            ParameterError: If the payload is malformed
        """
        if not isinstance(payload, EncryptedPayload):
            raise ParameterError("payload must be an EncryptedPayload")

        try:
            if payload.algorithm != ALGORITHM:
                raise ParameterError(f"Unsupported algorithm: {payload.algorithm}")
            key = await self._manager.get_key_by_version(
                tenant_id, payload.purpose, payload.key_version
            )
            plaintext = EnvelopeCipher.decrypt(
                payload.ciphertext,
                payload.iv,
                payload.auth_tag,
                key,
                build_aad(tenant_id, payload.purpose, payload.key_id, payload.key_version),
            )
        except EnvelopeError as e:
            logger.warning(
                "Decrypt failed: tenant=%s key_id=%s version=%s error=%s",
                tenant_id,
                payload.key_id,
                payload.key_version,
                type(e).__name__,
            )
            await self.audit.log(
                tenant_id,
                AuditOperation.DECRYPT,
                payload.key_id,
                payload.key_version,
                AuditOutcome.FAILURE,
                e,
            )
            raise

        await self.audit.log(
            tenant_id, AuditOperation.DECRYPT, payload.key_id, payload.key_version
        )
        return plaintext

    async def encrypt_text(
        self,
        text: str,
        tenant_id: str,
        purpose: Union[KeyPurpose, str] = KeyPurpose.GENERAL,
        field_name: Optional[str] = None,
    ) -> EncryptedPayload:
        """UTF-8 convenience wrapper around encrypt()."""
        context = EncryptionContext(tenant_id=tenant_id, purpose=purpose, field_name=field_name)
        return await self.encrypt(text.encode("utf-8"), context)

    async def decrypt_text(self, payload: EncryptedPayload, tenant_id: str) -> str:
        return (await self.decrypt(payload, tenant_id)).decode("utf-8")
