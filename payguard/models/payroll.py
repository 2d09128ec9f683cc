"""
PayGuard - Payroll Batch Models

A batch is one payroll submission cycle (e.g. one month).
Its batch_hash is a digest of the raw uploaded content and is unique:
byte-identical re-uploads are rejected before any detection work.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import (
    ForeignKey, Integer, Numeric, String, Text, JSON,
    Enum as SQLEnum, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payguard.models.base import BaseModel

if TYPE_CHECKING:
    from payguard.models.flag import Flag


class BatchStatus(str, Enum):
    """
    Batch lifecycle status.

    FAILED means "not yet chain-proven", not "invalid":
    a failed batch stays queryable and can be re-recorded.
    """
    PROCESSING = "processing"
    VERIFIED = "verified"
    FAILED = "failed"


class RecordStatus(str, Enum):
    """Payroll record screening status."""
    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"
    REJECTED = "rejected"


# Status rank for monotonic upgrades (never silently downgraded)
RECORD_STATUS_RANK = {
    RecordStatus.PENDING: 0,
    RecordStatus.VERIFIED: 1,
    RecordStatus.FLAGGED: 2,
    RecordStatus.REJECTED: 3,
}


class PayrollBatch(BaseModel):
    """Uploaded payroll batch."""

    __tablename__ = "payroll_batches"

    batch_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True,
        comment="SHA-256 of raw uploaded content",
    )

    # Pay period
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True,
    )

    # Aggregates
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False,
    )
    record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    flagged_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus),
        default=BatchStatus.PROCESSING,
        nullable=False,
        index=True,
    )

    # Ledger proof
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ledger_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Detection output
    detection_summary: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    summary_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    records: Mapped[List["PayrollRecord"]] = relationship(
        "PayrollRecord",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="PayrollRecord.position",
        lazy="selectin",
    )
    flags: Mapped[List["Flag"]] = relationship(
        "Flag",
        back_populates="batch",
        lazy="raise",  # query flags through PayrollBatchService.list_flags
    )

    def __repr__(self) -> str:
        return f"<PayrollBatch(batch_hash={self.batch_hash[:12]}..., status={self.status})>"


class PayrollRecord(BaseModel):
    """Single payroll line within a batch."""

    __tablename__ = "payroll_records"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("payroll_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer, nullable=False,
        comment="Row order within the uploaded file",
    )
    identity_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[RecordStatus] = mapped_column(
        SQLEnum(RecordStatus),
        default=RecordStatus.PENDING,
        nullable=False,
    )
    flag_ids: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    batch: Mapped["PayrollBatch"] = relationship("PayrollBatch", back_populates="records")

    __table_args__ = (
        UniqueConstraint("batch_id", "position", name="uq_payroll_record_position"),
    )

    def upgrade_status(self, new_status: RecordStatus) -> None:
        """Move to new_status only if it ranks above the current one."""
        if RECORD_STATUS_RANK[new_status] > RECORD_STATUS_RANK[self.status]:
            self.status = new_status

    def attach_flags(self, flag_ids: List[str]) -> None:
        """Append flag references in order, skipping ones already attached."""
        merged = list(self.flag_ids or [])
        for flag_id in flag_ids:
            if flag_id not in merged:
                merged.append(flag_id)
        # Reassign so the JSON column is marked dirty
        self.flag_ids = merged
        if merged:
            self.upgrade_status(RecordStatus.FLAGGED)
