"""
Tenant Keyring

Per-tenant envelope encryption with versioned, rotatable data-encryption keys,
an audit trail, and identifier hashing/masking helpers.

Quick Start
-----------
```python
import asyncio
from tenant_keyring import (
    EncryptionContext,
    EnvelopeService,
    InMemoryKeyStore,
    KeyLifecycleManager,
    KeyPurpose,
    StaticMasterKeySource,
)

async def main():
    manager = KeyLifecycleManager(
        store=InMemoryKeyStore(),
        master_key_source=StaticMasterKeySource.generate(),
    )
    service = EnvelopeService(manager)

    context = EncryptionContext("tenant-a", KeyPurpose.PII, field_name="email")
    payload = await service.encrypt(b"jane@example.com", context)

    # Rotate: new data uses v2, v1 stays decryptable until retired
    await manager.rotate("tenant-a", KeyPurpose.PII)
    assert await service.decrypt(payload, "tenant-a") == b"jane@example.com"

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: Authenticated encryption with a fresh random IV per call
- **Per-Tenant, Per-Purpose DEKs**: Wrapped under a master key
- **Two-Phase Rotation**: ACTIVE -> ROTATING -> RETIRED, old data stays readable
- **Race-Safe Lifecycle**: One active key per (tenant, purpose), always
- **Audit Trail**: One record per encrypt/decrypt/rotate/create/retire
- **PostgreSQL Storage**: asyncpg-backed key store and audit sink
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    ALGORITHM,
    IV_SIZE,
    TAG_SIZE,
    CipherResult,
    EnvelopeCipher,
    SecureKey,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    ConflictError,
    EnvelopeError,
    FatalConfigurationError,
    IntegrityError,
    InvalidKeyStateError,
    KeyNotFoundError,
    ParameterError,
    SerializationError,
    TransientStoreError,
)

# =============================================================================
# Model Exports
# =============================================================================

from .models import (
    AuditEvent,
    AuditOperation,
    AuditOutcome,
    EncryptedPayload,
    EncryptionContext,
    EncryptionKey,
    KeyPurpose,
    KeyStatus,
)

# =============================================================================
# Component Exports
# =============================================================================

from .audit import AuditLogger, AuditSink, InMemoryAuditSink, LoggingAuditSink
from .cache import CachedKey, KeyCache
from .config import Settings, configure_logging
from .manager import ActiveKey, KeyLifecycleManager, RotationResult
from .master_key import EnvironmentMasterKeySource, MasterKeySource, StaticMasterKeySource
from .pii import MaskType, hash_identifier, mask_for_display
from .reencryption import (
    NullReencryptionEmitter,
    QueueReencryptionEmitter,
    ReencryptionEmitter,
    ReencryptionTask,
)
from .service import EnvelopeService
from .storage import InMemoryKeyStore, KeyStore

# =============================================================================
# PostgreSQL Exports
# =============================================================================

from .postgres import PostgresAuditSink, PostgresKeyStore, create_schema

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "ALGORITHM",
    "IV_SIZE",
    "TAG_SIZE",
    "CipherResult",
    "EnvelopeCipher",
    "SecureKey",
    # Errors
    "EnvelopeError",
    "FatalConfigurationError",
    "TransientStoreError",
    "IntegrityError",
    "KeyNotFoundError",
    "ConflictError",
    "ParameterError",
    "InvalidKeyStateError",
    "SerializationError",
    # Models
    "AuditEvent",
    "AuditOperation",
    "AuditOutcome",
    "EncryptedPayload",
    "EncryptionContext",
    "EncryptionKey",
    "KeyPurpose",
    "KeyStatus",
    # Components
    "AuditLogger",
    "AuditSink",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "CachedKey",
    "KeyCache",
    "Settings",
    "configure_logging",
    "ActiveKey",
    "KeyLifecycleManager",
    "RotationResult",
    "MasterKeySource",
    "StaticMasterKeySource",
    "EnvironmentMasterKeySource",
    "MaskType",
    "hash_identifier",
    "mask_for_display",
    "ReencryptionEmitter",
    "ReencryptionTask",
    "NullReencryptionEmitter",
    "QueueReencryptionEmitter",
    "EnvelopeService",
    "KeyStore",
    "InMemoryKeyStore",
    # PostgreSQL
    "PostgresKeyStore",
    "PostgresAuditSink",
    "create_schema",
]
