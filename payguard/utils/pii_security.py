"""
PayGuard - PII Protection

Nigeria Data Protection Act compliant handling of staff identifiers:
1. Field-level encryption (AES-256-GCM) for recoverable values (name, DOB)
2. Masking for log lines and API output

Identifiers that never need to be recovered (BVN, NIN, phone) are not
encrypted at all; they are reduced to one-way hashes by the identity hasher.
"""

import base64
import hashlib
import secrets
import logging
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.backends import default_backend

from payguard.config import settings

logger = logging.getLogger(__name__)


# ============================================================================
# PII CATEGORIES
# ============================================================================

class PIICategory(str, Enum):
    """PII categories held for staff identities."""

    # Recoverable, encrypted at rest
    FULL_NAME = "name"
    DATE_OF_BIRTH = "dob"

    # Hashed only, masked for display
    BVN = "bvn"
    NIN = "nin"
    PHONE_NUMBER = "phone"


class PIIDecryptionError(ValueError):
    """Ciphertext is corrupted, truncated or was sealed under another key."""


# ============================================================================
# AES-256 ENCRYPTION ENGINE
# ============================================================================

class PIIEncryptionEngine:
    """
    AES-256-GCM field-level encryption.

    - 256-bit key from PII_ENCRYPTION_KEY (base64) or derived from SECRET_KEY
    - Unique 12-byte IV per encryption
    - Category bound as associated data, so a name ciphertext
      cannot be replayed into the DOB column
    """

    def __init__(self, master_key: Optional[str] = None):
        self.master_key = self._resolve_key(master_key)

    def _resolve_key(self, provided_key: Optional[str]) -> bytes:
        key = provided_key or settings.pii_encryption_key
        if key:
            raw = base64.b64decode(key)
            if len(raw) != 32:
                raise ValueError("PII encryption key must decode to 32 bytes")
            return raw

        if settings.is_production:
            logger.warning("PII_ENCRYPTION_KEY not set; deriving key from SECRET_KEY")
        return hashlib.sha256(settings.secret_key.encode()).digest()

    def encrypt(self, plaintext: str, category: PIICategory) -> str:
        """
        Encrypt a PII field.

        Returns:
            {category}:{iv}:{ciphertext}:{tag}, each part base64 encoded
        """
        if not plaintext:
            return ""

        iv = secrets.token_bytes(12)
        encryptor = Cipher(
            algorithms.AES(self.master_key),
            modes.GCM(iv),
            backend=default_backend(),
        ).encryptor()
        encryptor.authenticate_additional_data(category.value.encode())

        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return ":".join([
            category.value,
            base64.b64encode(iv).decode(),
            base64.b64encode(ciphertext).decode(),
            base64.b64encode(encryptor.tag).decode(),
        ])

    def decrypt(self, encrypted_value: str) -> Tuple[str, PIICategory]:
        """
        Decrypt a value produced by encrypt().

        Raises:
            PIIDecryptionError: on any format, key or integrity failure
        """
        if not encrypted_value:
            raise PIIDecryptionError("Empty ciphertext")

        try:
            category_raw, iv_b64, ct_b64, tag_b64 = encrypted_value.split(":")
            category = PIICategory(category_raw)

            decryptor = Cipher(
                algorithms.AES(self.master_key),
                modes.GCM(base64.b64decode(iv_b64), base64.b64decode(tag_b64)),
                backend=default_backend(),
            ).decryptor()
            decryptor.authenticate_additional_data(category.value.encode())
            padded = decryptor.update(base64.b64decode(ct_b64)) + decryptor.finalize()

            unpadder = padding.PKCS7(128).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8"), category
        except Exception as e:
            raise PIIDecryptionError(f"Decryption failed: {type(e).__name__}") from e

    def decrypt_field(self, encrypted_value: str, expected: PIICategory) -> str:
        """Decrypt and check the value was sealed for the expected column."""
        plaintext, category = self.decrypt(encrypted_value)
        if category != expected:
            raise PIIDecryptionError(
                f"Category mismatch: expected {expected.value}, got {category.value}"
            )
        return plaintext


# ============================================================================
# PII MASKING FOR DISPLAY
# ============================================================================

class PIIMasker:
    """Mask PII before it reaches logs or API responses."""

    @staticmethod
    def mask_bvn(bvn: str) -> str:
        """Mask BVN: 22*******45"""
        if not bvn or len(bvn) < 4:
            return "***********"
        return f"{bvn[:2]}*******{bvn[-2:]}"

    @staticmethod
    def mask_nin(nin: str) -> str:
        """Mask NIN: 123*****901"""
        if not nin or len(nin) < 6:
            return "***********"
        return f"{nin[:3]}*****{nin[-3:]}"

    @staticmethod
    def mask_phone(phone: str) -> str:
        """Mask phone: 0803***4567"""
        if not phone or len(phone) < 7:
            return "***********"
        return f"{phone[:4]}***{phone[-4:]}"

    @staticmethod
    def mask_name(name: str) -> str:
        """Mask name: A*** O***"""
        words = (name or "").split()
        if not words:
            return "***"
        return " ".join(f"{w[0]}***" for w in words)

    @staticmethod
    def mask_dob(dob: str) -> str:
        """Mask date of birth, keeping the year: 1985-**-**"""
        if not dob or len(dob) < 4:
            return "****-**-**"
        return f"{dob[:4]}-**-**"

    @staticmethod
    def short_hash(value: str, length: int = 12) -> str:
        """Truncated digest for log lines."""
        if not value:
            return ""
        return f"{value[:length]}..."

    @classmethod
    def mask_pii(cls, value: str, category: PIICategory) -> str:
        """Mask PII based on category."""
        maskers = {
            PIICategory.BVN: cls.mask_bvn,
            PIICategory.NIN: cls.mask_nin,
            PIICategory.PHONE_NUMBER: cls.mask_phone,
            PIICategory.FULL_NAME: cls.mask_name,
            PIICategory.DATE_OF_BIRTH: cls.mask_dob,
        }
        return maskers[category](value)


@lru_cache()
def get_pii_engine() -> PIIEncryptionEngine:
    """Process-wide encryption engine."""
    return PIIEncryptionEngine()
