"""
PayGuard - Identity Hasher

Deterministic, normalized SHA-256 handles for personal identifiers.

The separator, field order and normalization below define every identity
hash ever issued. Changing any of them invalidates the whole registry and
every on-chain proof, so a change here is a data migration, not a fix.
"""

import hashlib
import hmac
import re
from datetime import date
from typing import Union

from payguard.utils.error_handling import ValidationException

# Frozen hashing parameters
FIELD_SEPARATOR = "|"
IDENTITY_FIELD_ORDER = ("name", "dob", "bvn", "nin")
HASH_HEX_LENGTH = 64

_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def normalize(value: str) -> str:
    """Case-fold, collapse internal whitespace and trim."""
    return " ".join(value.casefold().split())


def _require(field: str, value: Union[str, date, None]) -> str:
    if isinstance(value, date):
        value = value.isoformat()
    if value is None or not str(value).strip():
        raise ValidationException(f"{field} is required for identity hashing", field=field)
    return normalize(str(value))


def _sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def hash_identity(
    name: str,
    dob: Union[str, date],
    bvn: str,
    nin: str,
) -> str:
    """
    Compute the identity hash over name|dob|bvn|nin.

    Swapping bvn and nin produces a different hash: the order is part
    of the identity.

    Raises:
        ValidationException: if any field is missing or blank
    """
    values = dict(zip(IDENTITY_FIELD_ORDER, (name, dob, bvn, nin)))
    parts = [_require(field, values[field]) for field in IDENTITY_FIELD_ORDER]
    return _sha256_hex(FIELD_SEPARATOR.join(parts).encode("utf-8"))


def hash_field(value: str, field: str = "value") -> str:
    """One-way hash of a single identifier (BVN, NIN, phone)."""
    return _sha256_hex(_require(field, value).encode("utf-8"))


def hash_batch(content: Union[bytes, str]) -> str:
    """Digest of raw batch content. No normalization: byte-identical only."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return _sha256_hex(content)


def hashes_equal(a: str, b: str) -> bool:
    """Constant-time hash comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def is_valid_hash(value: str) -> bool:
    """Check for 64 lower-case hexadecimal characters."""
    return isinstance(value, str) and bool(_HASH_PATTERN.match(value))
