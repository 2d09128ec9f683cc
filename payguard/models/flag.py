"""
PayGuard - Detection Flag Models

Flags are detector findings awaiting human review.
Append-only audit trail: flags are never deleted, and only
the review fields change (through the external audit workflow).
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, String, Text, JSON,
    Enum as SQLEnum, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payguard.models.base import BaseModel

if TYPE_CHECKING:
    from payguard.models.payroll import PayrollBatch


class FlagType(str, Enum):
    """Detector finding types."""
    GHOST = "ghost"
    MISSING_REGISTRY = "missing_registry"
    DUPLICATE = "duplicate"
    SALARY_ANOMALY = "salary_anomaly"


class FlagResolution(str, Enum):
    """Review outcome."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"


class Flag(BaseModel):
    """Detector finding for one identity in one batch."""

    __tablename__ = "payroll_flags"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("payroll_batches.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    identity_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    flag_type: Mapped[FlagType] = mapped_column(SQLEnum(FlagType), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False, comment="Confidence 0-1")

    reason: Mapped[str] = mapped_column(
        Text, nullable=False,
        comment="Deterministic template text",
    )
    explanation: Mapped[str] = mapped_column(
        Text, nullable=False,
        comment="Enriched text, or the template when enrichment is unavailable",
    )
    details: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False,
    )

    # Review sub-record
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution: Mapped[FlagResolution] = mapped_column(
        SQLEnum(FlagResolution),
        default=FlagResolution.PENDING,
        nullable=False,
    )
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True,
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    batch: Mapped["PayrollBatch"] = relationship("PayrollBatch", back_populates="flags")

    __table_args__ = (
        Index("ix_payroll_flags_batch_type", "batch_id", "flag_type"),
    )

    def __repr__(self) -> str:
        return f"<Flag(type={self.flag_type}, identity_hash={self.identity_hash[:12]}..., score={self.score:.2f})>"
