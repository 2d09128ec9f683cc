"""
PayGuard - Staff Registry Models

The staff registry is the system of record for payroll identities.
Raw PII never lives here in clear text:
- identity_hash: SHA-256 over normalized name|dob|bvn|nin
- bvn_hash / nin_hash / phone_hash: one-way per-field hashes (duplicate channels)
- name / dob: AES-256-GCM ciphertexts, recoverable for fuzzy name matching
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, Date, String, Text, JSON, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from payguard.models.base import BaseModel


class EmploymentType(str, Enum):
    """Employment type for registered staff."""
    PERMANENT = "permanent"
    CONTRACT = "contract"
    TEMPORARY = "temporary"


class FieldChannel(str, Enum):
    """
    Identifier channels hashed per field.
    Used by the exact-duplicate detector and registry lookups.
    """
    BVN = "bvn"
    NIN = "nin"
    PHONE = "phone"


class StaffIdentity(BaseModel):
    """
    Registered staff identity.

    Never deleted: deactivation sets is_active=False.
    verified / ledger_tx_hashes only change when a ledger
    submission for this identity succeeds.
    """

    __tablename__ = "staff_identities"

    identity_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True,
        comment="SHA-256 over normalized name|dob|bvn|nin",
    )

    # Per-field hashes (duplicate detection channels)
    bvn_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    nin_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phone_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Encrypted display values
    name_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    dob_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    # Employment
    staff_number: Mapped[Optional[str]] = mapped_column(
        String(30), nullable=True, unique=True,
        comment="Format: PG/YYYY/NNNN",
    )
    grade: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    position: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    employment_type: Mapped[EmploymentType] = mapped_column(
        SQLEnum(EmploymentType),
        default=EmploymentType.PERMANENT,
        nullable=False,
    )
    hire_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Ledger proof
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ledger_tx_hashes: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        Index("ix_staff_identities_verified_active", "verified", "is_active"),
    )

    def field_hash(self, channel: FieldChannel) -> Optional[str]:
        """Get the stored hash for an identifier channel."""
        if channel == FieldChannel.BVN:
            return self.bvn_hash
        if channel == FieldChannel.NIN:
            return self.nin_hash
        return self.phone_hash

    def __repr__(self) -> str:
        return f"<StaffIdentity(identity_hash={self.identity_hash[:12]}..., verified={self.verified})>"
