"""
Data model for tenant key management.

This module provides:
- KeyPurpose: Closed set of key categories
- KeyStatus: Key version lifecycle status
- EncryptionKey: Key metadata (never holds key material)
- EncryptionContext: Tenant/purpose/field a value is encrypted for
- EncryptedPayload: Result of an encryption, with everything needed to decrypt
- AuditOperation, AuditOutcome, AuditEvent: Audit records
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from .crypto import ALGORITHM
from .errors import InvalidKeyStateError, ParameterError, SerializationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class KeyPurpose(Enum):
    """Logical key category. One active key per (tenant, purpose)."""

    PII = "pii"
    CREDENTIALS = "credentials"
    TOKENS = "tokens"
    GENERAL = "general"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: Union[str, KeyPurpose]) -> KeyPurpose:
        """Parse from string. Unknown purposes are rejected."""
        if isinstance(s, KeyPurpose):
            return s
        try:
            return cls(str(s).lower())
        except ValueError:
            raise ParameterError(f"Unknown key purpose: {s!r}") from None


class KeyStatus(Enum):
    """Key version lifecycle status (matches database values)."""

    ACTIVE = "active"  # Current key for the pair (encrypt + decrypt)
    ROTATING = "rotating"  # Superseded, data still being migrated (decrypt only)
    RETIRED = "retired"  # Migration complete (decrypt only, retained)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> KeyStatus:
        """Parse from string."""
        try:
            return cls(s.lower())
        except ValueError:
            raise InvalidKeyStateError(f"Invalid key status: {s}") from None

    def can_transition_to(self, target: KeyStatus) -> bool:
        return _TRANSITIONS.get(self) == target


_TRANSITIONS = {
    KeyStatus.ACTIVE: KeyStatus.ROTATING,
    KeyStatus.ROTATING: KeyStatus.RETIRED,
}


class AuditOperation(Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    ROTATE = "rotate"
    CREATE_KEY = "create_key"
    RETIRE = "retire"

    def __str__(self) -> str:
        return self.value


class AuditOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class EncryptionKey:
    """
    Key metadata. The wrapped key material is stored separately by key_id.
    """

    key_id: str
    tenant_id: str
    purpose: KeyPurpose
    version: int
    status: KeyStatus
    created_at: datetime
    retired_at: Optional[datetime] = None
    algorithm: str = ALGORITHM

    @classmethod
    def new(
        cls,
        tenant_id: str,
        purpose: KeyPurpose,
        version: int = 1,
    ) -> EncryptionKey:
        """Create metadata for a brand new active key version."""
        if version < 1:
            raise ParameterError(f"Key version must be >= 1, got {version}")
        return cls(
            key_id=str(uuid4()),
            tenant_id=tenant_id,
            purpose=purpose,
            version=version,
            status=KeyStatus.ACTIVE,
            created_at=utcnow(),
        )

    def with_status(self, status: KeyStatus) -> EncryptionKey:
        """
        Return a copy moved to `status`.

        Raises:
            InvalidKeyStateError: If the transition is not active -> rotating
                or rotating -> retired
        """
        if not self.status.can_transition_to(status):
            raise InvalidKeyStateError(
                f"Key {self.key_id} cannot move from {self.status} to {status}"
            )
        retired_at = utcnow() if status == KeyStatus.RETIRED else self.retired_at
        return replace(self, status=status, retired_at=retired_at)


@dataclass(frozen=True)
class EncryptionContext:
    """Where a value is being encrypted for."""

    tenant_id: str
    purpose: KeyPurpose = KeyPurpose.GENERAL
    field_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ParameterError("tenant_id is required")
        object.__setattr__(self, "purpose", KeyPurpose.from_str(self.purpose))


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Encryption result.

    Decryptable only under the (tenant, purpose, key_version) it was produced
    with; those are bound into the AEAD associated data.
    """

    ciphertext: bytes
    key_id: str
    key_version: int
    iv: bytes
    auth_tag: bytes
    purpose: KeyPurpose
    algorithm: str = ALGORITHM
    field_name: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "purpose", KeyPurpose.from_str(self.purpose))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dictionary (binary fields base64-encoded)."""
        return {
            "ciphertext": _b64(self.ciphertext),
            "key_id": self.key_id,
            "key_version": self.key_version,
            "algorithm": self.algorithm,
            "iv": _b64(self.iv),
            "auth_tag": _b64(self.auth_tag),
            "purpose": self.purpose.value,
            "field_name": self.field_name,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EncryptedPayload:
        try:
            return cls(
                ciphertext=_unb64(data["ciphertext"]),
                key_id=str(data["key_id"]),
                key_version=int(data["key_version"]),
                algorithm=data.get("algorithm", ALGORITHM),
                iv=_unb64(data["iv"]),
                auth_tag=_unb64(data["auth_tag"]),
                purpose=KeyPurpose.from_str(data["purpose"]),
                field_name=data.get("field_name"),
                timestamp=datetime.fromisoformat(data["timestamp"])
                if data.get("timestamp")
                else utcnow(),
            )
        except (
            KeyError,
            TypeError,
            ValueError,
            AttributeError,
            binascii.Error,
            ParameterError,
        ) as e:
            raise SerializationError(
                f"Failed to deserialize payload: {type(e).__name__}"
            ) from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> EncryptedPayload:
        try:
            data = json.loads(json_str)
        except (TypeError, ValueError) as e:
            raise SerializationError("Payload is not valid JSON") from e
        if not isinstance(data, dict):
            raise SerializationError("Payload JSON must be an object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class AuditEvent:
    """One audit record. Carries identifiers only, never data or keys."""

    tenant_id: str
    operation: AuditOperation
    key_id: Optional[str]
    version: Optional[int]
    outcome: AuditOutcome
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None  # exception class name only

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "operation": self.operation.value,
            "key_id": self.key_id,
            "version": self.version,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
        }


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _unb64(encoded: str) -> bytes:
    return base64.b64decode(encoded, validate=True)
