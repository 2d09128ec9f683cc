"""
PayGuard - Payroll Batch Schemas

Pydantic schemas for batch ingestion results, batches and flags.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from payguard.models.flag import FlagType, FlagResolution
from payguard.models.payroll import BatchStatus, RecordStatus


class FlagResponse(BaseModel):
    """Detector finding."""
    id: UUID
    batch_id: UUID
    identity_hash: str
    flag_type: FlagType
    score: float
    reason: str
    explanation: str
    details: Dict[str, Any] = {}
    reviewed: bool
    resolution: FlagResolution

    class Config:
        from_attributes = True


class PayrollRecordResponse(BaseModel):
    """Single screened payroll line."""
    position: int
    identity_hash: str
    amount: Decimal
    status: RecordStatus
    flag_ids: List[str] = []

    class Config:
        from_attributes = True


class PayrollBatchResponse(BaseModel):
    """Payroll batch with aggregates and ledger proof."""
    id: UUID
    batch_hash: str
    period_month: int
    period_year: int
    total_amount: Decimal
    record_count: int
    flagged_count: int
    status: BatchStatus
    ledger_tx_hash: Optional[str] = None
    ledger_error: Optional[str] = None
    summary_text: Optional[str] = None
    detection_summary: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BatchIngestResult(BaseModel):
    """Outcome of ingesting one CSV upload."""
    batch: PayrollBatchResponse
    rows_received: int
    rows_dropped: int
    flags: List[FlagResponse] = []
    skipped_evaluations: List[Dict[str, Any]] = []


class BatchChainVerification(BaseModel):
    """On-chain presence check for a batch hash."""
    batch_id: UUID
    batch_hash: str
    recorded_on_chain: bool
    ledger_tx_hash: Optional[str] = None


class BatchFlagStats(BaseModel):
    """Flag counts for a batch by type and review resolution."""
    batch_id: UUID
    total: int
    by_type: Dict[str, int]
    by_resolution: Dict[str, int]
