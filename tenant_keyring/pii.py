"""
One-way hashing and display masking for identifiers.

Neither function is encryption: hashes support equality lookups without
storing plaintext, masks are for showing values to users. Both are pure.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import unicodedata
from enum import Enum
from typing import Union

from .errors import ParameterError

FULL_MASK = "****"

_NON_DIGITS = re.compile(r"\D")


class MaskType(Enum):
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    GENERIC = "generic"

    @classmethod
    def from_str(cls, s: Union[str, MaskType]) -> MaskType:
        if isinstance(s, MaskType):
            return s
        try:
            return cls(str(s).lower())
        except ValueError:
            raise ParameterError(f"Unknown mask type: {s!r}") from None


def hash_identifier(value: str, salt: Union[str, bytes]) -> str:
    """
    Deterministic keyed hash of an identifier: HMAC-SHA256(salt, value).

    The value is NFC-normalized first so visually identical inputs hash the
    same. Returns a 64-character hex digest.

    Raises:
        ParameterError: If salt is empty
    """
    if not salt:
        raise ParameterError("salt must not be empty")
    key = salt.encode("utf-8") if isinstance(salt, str) else bytes(salt)
    normalized = unicodedata.normalize("NFC", value)
    return hmac.new(key, normalized.encode("utf-8"), hashlib.sha256).hexdigest()


def mask_for_display(value: str, mask_type: Union[str, MaskType] = MaskType.GENERIC) -> str:
    """
    Mask a value for display.

    email:   jo***@example.com (first 2 local-part chars, domain kept)
    phone:   555****4567 (first 3 and last 4 digits)
    ssn:     ***-**-6789 (last 4 digits)
    generic: ab****yz (first 2 and last 2, length kept); **** if len <= 4
    """
    kind = MaskType.from_str(mask_type)
    if kind == MaskType.EMAIL:
        return _mask_email(value)
    if kind == MaskType.PHONE:
        return _mask_phone(value)
    if kind == MaskType.SSN:
        return _mask_ssn(value)
    return _mask_generic(value)


def _mask_email(value: str) -> str:
    local, sep, domain = value.rpartition("@")
    if not sep or not local:
        return _mask_generic(value)
    return f"{local[:2]}***@{domain}"


def _mask_phone(value: str) -> str:
    digits = _NON_DIGITS.sub("", value)
    if len(digits) < 8:
        return FULL_MASK
    return f"{digits[:3]}****{digits[-4:]}"


def _mask_ssn(value: str) -> str:
    digits = _NON_DIGITS.sub("", value)
    if len(digits) < 4:
        return FULL_MASK
    return f"***-**-{digits[-4:]}"


def _mask_generic(value: str) -> str:
    if len(value) <= 4:
        return FULL_MASK
    return value[:2] + "*" * (len(value) - 4) + value[-2:]
