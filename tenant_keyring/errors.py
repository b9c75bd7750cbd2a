"""
Exception classes for tenant key management operations.

Messages never carry plaintext or key material; identifiers only.
"""

from __future__ import annotations


class EnvelopeError(Exception):
    """Base exception for all key management and envelope operations."""

    pass


class FatalConfigurationError(EnvelopeError):
    """Master key missing or invalid; crypto operations must not be served."""

    pass


class TransientStoreError(EnvelopeError):
    """Key store I/O failed. Safe for the caller to retry."""

    pass


class IntegrityError(EnvelopeError):
    """AEAD tag verification failed (tampering or wrong key). Never retry as-is."""

    pass


class KeyNotFoundError(EnvelopeError):
    """Requested key or key version does not exist."""

    pass


class ConflictError(EnvelopeError):
    """Lifecycle race lost (duplicate version, stale active key). Re-read and retry."""

    pass


class ParameterError(EnvelopeError):
    """Malformed input: key/IV/tag length, unknown purpose or mask type."""

    pass


class InvalidKeyStateError(EnvelopeError):
    """Key is in an invalid state for the requested transition."""

    pass


class SerializationError(EnvelopeError):
    """Serialization or deserialization of a payload failed."""

    pass
