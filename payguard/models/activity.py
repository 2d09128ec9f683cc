"""
PayGuard - Activity Log Model

Append-only trail of who did what: payroll uploads, chain proofs and
staff lifecycle changes. Rows are written with the caller's transaction
and never updated or deleted.
"""

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, String, Text, Enum as SQLEnum, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from payguard.models.base import BaseModel


class ActivityAction(str, Enum):
    """Activity action types."""
    PAYROLL_UPLOADED = "payroll_uploaded"
    PAYROLL_DISCARDED = "payroll_discarded"
    BLOCKCHAIN_TX_RECORDED = "blockchain_tx_recorded"
    BLOCKCHAIN_TX_FAILED = "blockchain_tx_failed"
    STAFF_REGISTERED = "staff_registered"
    STAFF_DEACTIVATED = "staff_deactivated"


class ActivityEntityType(str, Enum):
    """Kind of entity an activity refers to."""
    PAYROLL = "payroll"
    STAFF = "staff"
    BLOCKCHAIN = "blockchain"


class ActivityStatus(str, Enum):
    """Outcome of the logged action."""
    SUCCESS = "success"
    FAILED = "failed"


class ActivityLog(BaseModel):
    """One logged action."""

    __tablename__ = "activity_logs"

    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,  # system actions have no actor
        index=True,
    )
    action: Mapped[ActivityAction] = mapped_column(SQLEnum(ActivityAction), nullable=False, index=True)
    entity_type: Mapped[ActivityEntityType] = mapped_column(SQLEnum(ActivityEntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Batch id, identity hash or transaction hash",
    )
    status: Mapped[ActivityStatus] = mapped_column(
        SQLEnum(ActivityStatus),
        default=ActivityStatus.SUCCESS,
        nullable=False,
    )
    details: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_activity_logs_entity", "entity_type", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog(action={self.action}, entity={self.entity_type}:{self.entity_id[:12]})>"
