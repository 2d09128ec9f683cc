"""
PayGuard - Ledger Receipt Models

Off-chain record of every Soroban transaction submitted for a staff
identity or payroll batch. Receipts are written as unknown_pending at
broadcast and reconciled by the background confirmation poll.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from payguard.models.base import BaseModel


class ReceiptStatus(str, Enum):
    """
    Three-state ledger outcome.
    UNKNOWN_PENDING forces callers to handle unconfirmed writes.
    """
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN_PENDING = "unknown_pending"


class LedgerSubject(str, Enum):
    """What a ledger transaction proves."""
    STAFF = "staff"
    BATCH = "batch"


class LedgerOperation(str, Enum):
    """Soroban contract functions that write state."""
    REGISTER_STAFF = "register_staff"
    REVOKE_STAFF = "revoke_staff"
    RECORD_PAYROLL_BATCH = "record_payroll_batch"


class LedgerReceipt(BaseModel):
    """Submitted Soroban transaction and its reconciled status."""

    __tablename__ = "ledger_receipts"

    tx_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    ledger_sequence: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True,
        comment="Unknown until confirmation",
    )
    status: Mapped[ReceiptStatus] = mapped_column(
        SQLEnum(ReceiptStatus),
        default=ReceiptStatus.UNKNOWN_PENDING,
        nullable=False,
        index=True,
    )

    subject_type: Mapped[LedgerSubject] = mapped_column(SQLEnum(LedgerSubject), nullable=False)
    subject_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    operation: Mapped[LedgerOperation] = mapped_column(SQLEnum(LedgerOperation), nullable=False)

    # Reconciliation
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_ledger_receipts_subject", "subject_type", "subject_hash"),
    )

    @property
    def is_final(self) -> bool:
        """Whether reconciliation has reached a terminal status."""
        return self.status != ReceiptStatus.UNKNOWN_PENDING
