"""
PayGuard - Payroll Batch Service

Drives a payroll upload through the integrity pipeline:
    hash -> reject duplicate -> parse -> classify -> persist (processing)
    -> detect -> attach flags -> summarize -> record on ledger
    -> verified | failed

The batch is committed before detection and stays queryable whatever the
ledger outcome. "failed" means not yet chain-proven, not invalid. A batch
whose detection aborts is discarded rather than left in processing.
"""

import asyncio
import csv
import io
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple, Union

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payguard.config import settings
from payguard.models.activity import ActivityAction, ActivityEntityType, ActivityStatus
from payguard.models.flag import Flag, FlagResolution, FlagType
from payguard.models.payroll import BatchStatus, PayrollBatch, PayrollRecord, RecordStatus
from payguard.schemas.payroll import (
    BatchChainVerification,
    BatchFlagStats,
    BatchIngestResult,
    FlagResponse,
    PayrollBatchResponse,
)
from payguard.services import flag_explanations
from payguard.services.activity_log_service import ActivityLogService
from payguard.services.detection_engine import CandidateRecord, DetectionEngine, DetectionResult
from payguard.services.identity_hasher import hash_batch, is_valid_hash
from payguard.services.ledger_client import LedgerClient
from payguard.services.staff_registry import SQLStaffRegistry
from payguard.utils.error_handling import (
    BatchNotFoundException,
    DuplicateBatchException,
    ErrorCode,
    InvalidAmountException,
    LedgerException,
    ValidationException,
    validate_amount,
)

logger = logging.getLogger(__name__)


# Accepted CSV headers (case-insensitive), in order of preference
IDENTITY_COLUMNS = ("identity_hash", "staff_hash", "staffhash")
AMOUNT_COLUMNS = ("amount", "salary")

MIN_PERIOD_YEAR = 2020

LEDGER_NOT_CONFIGURED = "Ledger not configured"


def parse_payroll_csv(content: Union[bytes, str]) -> Tuple[List[CandidateRecord], int]:
    """
    Parse payroll rows.

    Returns:
        (valid records, number of data rows read). Rows with a missing or
        malformed identity hash, or a non-numeric, non-positive or
        out-of-bounds amount are dropped.

    Raises:
        ValidationException: empty file or missing required columns
    """
    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationException("CSV file is empty")

    headers = {h.strip().lower(): h for h in reader.fieldnames if h}
    identity_col = next((headers[c] for c in IDENTITY_COLUMNS if c in headers), None)
    amount_col = next((headers[c] for c in AMOUNT_COLUMNS if c in headers), None)
    if identity_col is None or amount_col is None:
        raise ValidationException(
            "CSV missing required columns",
            details={
                "identity_column": list(IDENTITY_COLUMNS),
                "amount_column": list(AMOUNT_COLUMNS),
                "found": sorted(headers),
            },
        )

    maximum = Decimal(str(settings.payroll_amount_max))
    records: List[CandidateRecord] = []
    rows_read = 0
    for position, row in enumerate(reader):
        rows_read += 1
        identity_hash = (row.get(identity_col) or "").strip().lower()
        if not is_valid_hash(identity_hash):
            continue
        try:
            amount = validate_amount(row.get(amount_col) or "", maximum=maximum)
        except InvalidAmountException:
            continue
        records.append(CandidateRecord(position=position, identity_hash=identity_hash, amount=amount))

    return records, rows_read


class PayrollBatchService:
    """Service for payroll batch ingestion and ledger proof."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerClient] = None,
        enricher: Optional[Any] = None,
        engine: Optional[DetectionEngine] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.enricher = enricher
        self.registry = SQLStaffRegistry(db)
        self.activity = ActivityLogService(db)
        self.engine = engine or DetectionEngine(self.registry, enricher=enricher)

    # ===========================================
    # INGESTION
    # ===========================================

    @staticmethod
    def _validate_period(period_month: int, period_year: int) -> None:
        if not 1 <= period_month <= 12:
            raise ValidationException(
                "Month must be between 1 and 12", field="period_month", code=ErrorCode.INVALID_PERIOD
            )
        if not MIN_PERIOD_YEAR <= period_year <= datetime.now(timezone.utc).year + 1:
            raise ValidationException("Invalid year", field="period_year", code=ErrorCode.INVALID_PERIOD)

    async def ingest_csv(
        self,
        content: Union[bytes, str],
        period_month: int,
        period_year: int,
        uploaded_by_id: Optional[uuid.UUID] = None,
    ) -> BatchIngestResult:
        """
        Ingest one payroll upload.

        Raises:
            DuplicateBatchException: identical content was already ingested
            ValidationException: bad period, empty file, missing columns, no valid rows
        """
        self._validate_period(period_month, period_year)

        batch_hash = hash_batch(content)
        existing = await self.get_batch_by_hash(batch_hash)
        if existing is not None:
            logger.info(f"Rejected duplicate batch {batch_hash[:12]}... (existing {existing.id})")
            raise DuplicateBatchException(batch_hash, existing.id)

        candidates, rows_read = parse_payroll_csv(content)
        if not candidates:
            raise ValidationException("No valid payroll records found in CSV")
        if len(candidates) > settings.max_batch_records:
            raise ValidationException(
                f"Batch has {len(candidates)} records; the limit is {settings.max_batch_records}"
            )

        batch = await self._create_batch(batch_hash, candidates, period_month, period_year, uploaded_by_id)
        logger.info(
            f"Batch {batch.id} ({batch_hash[:12]}...) created: {batch.record_count} records, "
            f"{rows_read - len(candidates)} rows dropped"
        )

        result = await self._detect_and_attach(batch, candidates)
        await self._summarize(batch, result)
        await self._record_on_ledger(batch, actor_id=uploaded_by_id)

        return BatchIngestResult(
            batch=PayrollBatchResponse.model_validate(batch),
            rows_received=rows_read,
            rows_dropped=rows_read - len(candidates),
            flags=[FlagResponse.model_validate(f) for f in result.flags],
            skipped_evaluations=[s.to_dict() for s in result.skipped],
        )

    async def _create_batch(
        self,
        batch_hash: str,
        candidates: Sequence[CandidateRecord],
        period_month: int,
        period_year: int,
        uploaded_by_id: Optional[uuid.UUID],
    ) -> PayrollBatch:
        known = {
            s.identity_hash
            for s in await self.registry.find_many_by_identity_hash(c.identity_hash for c in candidates)
        }

        batch = PayrollBatch(
            id=uuid.uuid4(),
            batch_hash=batch_hash,
            period_month=period_month,
            period_year=period_year,
            uploaded_by_id=uploaded_by_id,
            total_amount=sum((c.amount for c in candidates), Decimal("0")),
            record_count=len(candidates),
            flagged_count=0,
            status=BatchStatus.PROCESSING,
        )
        batch.records = [
            PayrollRecord(
                position=c.position,
                identity_hash=c.identity_hash,
                amount=c.amount,
                status=RecordStatus.PENDING if c.identity_hash in known else RecordStatus.FLAGGED,
                flag_ids=[],
            )
            for c in candidates
        ]
        batch.flagged_count = sum(1 for r in batch.records if r.status == RecordStatus.FLAGGED)

        self.db.add(batch)
        self.activity.record(
            ActivityAction.PAYROLL_UPLOADED,
            ActivityEntityType.PAYROLL,
            str(batch.id),
            actor_id=uploaded_by_id,
            details={
                "batch_hash": batch_hash,
                "record_count": batch.record_count,
                "total_amount": str(batch.total_amount),
                "period": f"{period_month:02d}/{period_year}",
            },
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent upload of the same content won the race
            await self.db.rollback()
            raise DuplicateBatchException(batch_hash)
        return batch

    async def _detect_and_attach(
        self, batch: PayrollBatch, candidates: Sequence[CandidateRecord]
    ) -> DetectionResult:
        """
        Run detection and commit flags plus record updates atomically.

        If detection fails or is cancelled, nothing it produced is kept and
        the batch itself is discarded, so the same content can be resubmitted.
        """
        batch_id, batch_hash, actor_id = batch.id, batch.batch_hash, batch.uploaded_by_id
        try:
            result = await self.engine.run(batch_id, candidates)

            self.db.add_all(result.flags)
            flags_by_identity = result.flags_by_identity()
            for record in batch.records:
                flags = flags_by_identity.get(record.identity_hash, [])
                if flags:
                    record.attach_flags([str(f.id) for f in flags])

            batch.flagged_count = sum(1 for r in batch.records if r.flag_ids)
            batch.detection_summary = result.summary
            await self.db.commit()
        except (Exception, asyncio.CancelledError) as e:
            await self.db.rollback()
            reason = str(e) or type(e).__name__
            await asyncio.shield(self._discard_batch(batch_id, batch_hash, actor_id, reason))
            logger.error(f"Detection for batch {batch_id} aborted ({reason}); batch discarded, no flags persisted")
            raise
        return result

    async def _discard_batch(
        self,
        batch_id: uuid.UUID,
        batch_hash: str,
        actor_id: Optional[uuid.UUID],
        reason: str,
    ) -> None:
        await self.db.execute(delete(PayrollRecord).where(PayrollRecord.batch_id == batch_id))
        await self.db.execute(delete(PayrollBatch).where(PayrollBatch.id == batch_id))
        self.activity.record(
            ActivityAction.PAYROLL_DISCARDED,
            ActivityEntityType.PAYROLL,
            str(batch_id),
            actor_id=actor_id,
            details={"batch_hash": batch_hash},
            status=ActivityStatus.FAILED,
            error_message=reason,
        )
        await self.db.commit()

    async def _summarize(self, batch: PayrollBatch, result: DetectionResult) -> None:
        counts = {t.value: result.summary.get(t.value, 0) for t in FlagType}
        fallback = flag_explanations.batch_summary_text(
            batch.period_month,
            batch.period_year,
            batch.record_count,
            batch.total_amount,
            batch.flagged_count,
            counts,
        )
        summary_text = fallback
        if self.enricher is not None:
            summary_text = await self.enricher.summarize_batch(
                {
                    "period": f"{batch.period_month:02d}/{batch.period_year}",
                    "total_staff": batch.record_count,
                    "total_amount": str(batch.total_amount),
                    "flagged_records": batch.flagged_count,
                    **counts,
                },
                fallback,
            )
        batch.summary_text = summary_text
        await self.db.commit()

    async def _record_on_ledger(
        self, batch: PayrollBatch, actor_id: Optional[uuid.UUID] = None
    ) -> PayrollBatch:
        """Record the batch hash; verified on broadcast, failed on any ledger error."""
        if self.ledger is None:
            batch.status = BatchStatus.FAILED
            batch.ledger_error = LEDGER_NOT_CONFIGURED
            logger.warning(f"Batch {batch.id} not recorded on chain: ledger not configured")
        else:
            try:
                submission = await self.ledger.record_payroll_batch(batch.batch_hash, batch.record_count)
            except LedgerException as e:
                batch.status = BatchStatus.FAILED
                batch.ledger_error = e.message
                logger.error(f"Batch {batch.id} ledger recording failed: {e.message}")
            else:
                batch.status = BatchStatus.VERIFIED
                batch.ledger_tx_hash = submission.tx_hash
                batch.ledger_error = None
                logger.info(f"Batch {batch.id} recorded on chain (tx={submission.tx_hash[:12]}...)")

        details = {"batch_id": str(batch.id), "batch_hash": batch.batch_hash, "record_count": batch.record_count}
        if batch.status == BatchStatus.VERIFIED:
            self.activity.record(
                ActivityAction.BLOCKCHAIN_TX_RECORDED,
                ActivityEntityType.BLOCKCHAIN,
                batch.ledger_tx_hash,
                actor_id=actor_id,
                details=details,
            )
        else:
            self.activity.record(
                ActivityAction.BLOCKCHAIN_TX_FAILED,
                ActivityEntityType.BLOCKCHAIN,
                batch.batch_hash,
                actor_id=actor_id,
                details=details,
                status=ActivityStatus.FAILED,
                error_message=batch.ledger_error,
            )

        await self.db.commit()
        return batch

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_batch(self, batch_id: uuid.UUID) -> PayrollBatch:
        result = await self.db.execute(select(PayrollBatch).where(PayrollBatch.id == batch_id))
        batch = result.scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundException(batch_id)
        return batch

    async def get_batch_by_hash(self, batch_hash: str) -> Optional[PayrollBatch]:
        result = await self.db.execute(select(PayrollBatch).where(PayrollBatch.batch_hash == batch_hash))
        return result.scalar_one_or_none()

    async def list_flags(
        self,
        batch_id: uuid.UUID,
        flag_type: Optional[FlagType] = None,
    ) -> List[Flag]:
        """Flags for a batch, optionally filtered by type."""
        query = select(Flag).where(Flag.batch_id == batch_id)
        if flag_type is not None:
            query = query.where(Flag.flag_type == flag_type)
        query = query.order_by(Flag.identity_hash, Flag.flag_type)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def flag_stats(self, batch_id: uuid.UUID) -> BatchFlagStats:
        """Flag counts for a batch by type and by resolution; absent keys count zero."""
        batch = await self.get_batch(batch_id)
        result = await self.db.execute(
            select(Flag.flag_type, Flag.resolution, func.count())
            .where(Flag.batch_id == batch.id)
            .group_by(Flag.flag_type, Flag.resolution)
        )

        by_type = {t.value: 0 for t in FlagType}
        by_resolution = {r.value: 0 for r in FlagResolution}
        for flag_type, resolution, count in result.all():
            by_type[flag_type.value] += count
            by_resolution[resolution.value] += count

        return BatchFlagStats(
            batch_id=batch.id,
            total=sum(by_type.values()),
            by_type=by_type,
            by_resolution=by_resolution,
        )

    async def list_failed_batches(self, limit: int = 50) -> List[PayrollBatch]:
        """Batches not yet chain-proven, oldest first."""
        result = await self.db.execute(
            select(PayrollBatch)
            .where(PayrollBatch.status == BatchStatus.FAILED)
            .order_by(PayrollBatch.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ===========================================
    # LEDGER FOLLOW-UP
    # ===========================================

    async def retry_ledger_recording(self, batch_id: uuid.UUID) -> PayrollBatch:
        """Re-attempt the chain proof for a failed batch."""
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.FAILED:
            return batch

        if self.ledger is not None and await self.ledger.is_batch_recorded(batch.batch_hash):
            batch.status = BatchStatus.VERIFIED
            batch.ledger_error = None
            await self.db.commit()
            logger.info(f"Batch {batch.id} already recorded on chain; marked verified")
            return batch

        return await self._record_on_ledger(batch)

    async def verify_batch_on_chain(self, batch_id: uuid.UUID) -> BatchChainVerification:
        """Check on-chain presence of a batch hash (advisory)."""
        batch = await self.get_batch(batch_id)
        recorded = False
        if self.ledger is not None:
            recorded = await self.ledger.is_batch_recorded(batch.batch_hash)
        return BatchChainVerification(
            batch_id=batch.id,
            batch_hash=batch.batch_hash,
            recorded_on_chain=recorded,
            ledger_tx_hash=batch.ledger_tx_hash,
        )
