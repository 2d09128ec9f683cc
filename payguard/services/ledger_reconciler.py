"""
PayGuard - Ledger Confirmation Reconciliation

After broadcast, every Soroban transaction starts as unknown_pending.
Two mechanisms move receipts to a final status:

- ConfirmationPoller: one in-process asyncio task per transaction,
  bounded attempts with a fixed delay, cancelled on shutdown
- ReceiptReconciler: periodic sweep (Celery beat) over receipts the
  in-process poll gave up on or never finished

A failed confirmation is logged for operators. Off-chain state is the
source of truth and is never rolled back from here.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payguard.config import settings
from payguard.models.base import utcnow
from payguard.models.ledger import LedgerReceipt, ReceiptStatus
from payguard.services.soroban_gateway import LedgerGateway, RpcTransactionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# RECEIPT STORE
# =============================================================================

class ReceiptStore(ABC):
    """Persistence of ledger receipts, independent of caller transactions."""

    @abstractmethod
    async def record_submission(self, submission) -> None:
        """Persist a freshly broadcast transaction as unknown_pending."""
        pass

    @abstractmethod
    async def update_status(
        self,
        tx_hash: str,
        status: ReceiptStatus,
        poll_attempts: int,
        ledger_sequence: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a confirmation check."""
        pass

    @abstractmethod
    async def list_stale_pending(self, older_than: datetime, max_attempts: int, limit: int) -> List[LedgerReceipt]:
        """Pending receipts eligible for another confirmation check."""
        pass


class SQLReceiptStore(ReceiptStore):
    """Receipt store using short-lived sessions from a session factory."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from payguard.database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory

    async def record_submission(self, submission) -> None:
        async with self.session_factory() as session:
            session.add(LedgerReceipt(
                tx_hash=submission.tx_hash,
                status=ReceiptStatus.UNKNOWN_PENDING,
                subject_type=submission.subject_type,
                subject_hash=submission.subject_hash,
                operation=submission.operation,
                poll_attempts=0,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Resubmission of an identical transaction
                await session.rollback()
                logger.info(f"Receipt for tx {submission.tx_hash[:12]}... already recorded")

    async def update_status(
        self,
        tx_hash: str,
        status: ReceiptStatus,
        poll_attempts: int,
        ledger_sequence: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            receipt = await self._get(session, tx_hash)
            if receipt is None:
                logger.warning(f"No receipt for tx {tx_hash[:12]}..., status {status.value} not stored")
                return
            receipt.status = status
            receipt.poll_attempts = poll_attempts
            if ledger_sequence is not None:
                receipt.ledger_sequence = ledger_sequence
            if last_error is not None:
                receipt.last_error = last_error
            if status != ReceiptStatus.UNKNOWN_PENDING:
                receipt.confirmed_at = utcnow()
            await session.commit()

    async def list_stale_pending(self, older_than: datetime, max_attempts: int, limit: int = 100) -> List[LedgerReceipt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerReceipt)
                .where(
                    LedgerReceipt.status == ReceiptStatus.UNKNOWN_PENDING,
                    LedgerReceipt.created_at <= older_than,
                    LedgerReceipt.poll_attempts < max_attempts,
                )
                .order_by(LedgerReceipt.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _get(session: AsyncSession, tx_hash: str) -> Optional[LedgerReceipt]:
        result = await session.execute(select(LedgerReceipt).where(LedgerReceipt.tx_hash == tx_hash))
        return result.scalar_one_or_none()


# =============================================================================
# IN-PROCESS CONFIRMATION POLL
# =============================================================================

class ConfirmationPoller:
    """
    Background confirmation of broadcast transactions.

    Each tracked transaction gets its own task. A task checks the RPC up to
    max_attempts times, interval_seconds apart, and writes the outcome to the
    receipt store. Transactions still unknown after the last attempt stay
    unknown_pending for the periodic sweep.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        store: Optional[ReceiptStore] = None,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        on_final: Optional[Callable[[str, ReceiptStatus], None]] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.max_attempts = max_attempts or settings.ledger_poll_max_attempts
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.ledger_poll_interval_seconds
        )
        self.on_final = on_final
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def track(self, tx_hash: str) -> asyncio.Task:
        """Start polling a transaction. Tracking the same hash twice is a no-op."""
        existing = self._tasks.get(tx_hash)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._poll(tx_hash), name=f"ledger-confirm-{tx_hash[:12]}")
        self._tasks[tx_hash] = task
        task.add_done_callback(lambda t, h=tx_hash: self._tasks.pop(h, None))
        return task

    async def _poll(self, tx_hash: str) -> ReceiptStatus:
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self.gateway.get_transaction(tx_hash)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.debug(f"Confirmation check {attempt} for {tx_hash[:12]}... failed: {last_error}")
                continue

            if result.status == RpcTransactionStatus.SUCCESS:
                logger.info(f"Ledger tx {tx_hash[:12]}... confirmed in ledger {result.ledger}")
                await self._store(tx_hash, ReceiptStatus.SUCCESS, attempt, result.ledger, None)
                return ReceiptStatus.SUCCESS

            if result.status == RpcTransactionStatus.FAILED:
                logger.error(
                    f"Ledger tx {tx_hash[:12]}... FAILED on chain (ledger {result.ledger}): "
                    f"{result.error}. Off-chain state unchanged; operator follow-up required."
                )
                await self._store(tx_hash, ReceiptStatus.FAILED, attempt, result.ledger, result.error)
                return ReceiptStatus.FAILED

        logger.warning(
            f"Ledger tx {tx_hash[:12]}... still unconfirmed after {self.max_attempts} checks; "
            f"left as unknown_pending for reconciliation"
        )
        await self._store(tx_hash, ReceiptStatus.UNKNOWN_PENDING, self.max_attempts, None, last_error)
        return ReceiptStatus.UNKNOWN_PENDING

    async def _store(
        self,
        tx_hash: str,
        status: ReceiptStatus,
        attempts: int,
        ledger: Optional[int],
        error: Optional[str],
    ) -> None:
        if self.store is not None:
            try:
                await self.store.update_status(tx_hash, status, attempts, ledger, error)
            except Exception as e:
                logger.error(f"Failed to store receipt status for {tx_hash[:12]}...: {e}")
        if self.on_final is not None and status != ReceiptStatus.UNKNOWN_PENDING:
            self.on_final(tx_hash, status)

    async def wait_all(self) -> None:
        """Wait for every tracked transaction to reach its poll outcome."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all outstanding polls."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} pending ledger confirmation polls")
        self._tasks.clear()


# =============================================================================
# PERIODIC SWEEP
# =============================================================================

class ReceiptReconciler:
    """Single-pass re-check of stale unknown_pending receipts."""

    def __init__(self, gateway: LedgerGateway, store: ReceiptStore):
        self.gateway = gateway
        self.store = store
        self.min_age = timedelta(minutes=settings.ledger_reconcile_min_age_minutes)
        self.attempt_ceiling = settings.ledger_poll_max_attempts + settings.ledger_reconcile_max_attempts

    async def reconcile_once(self, limit: int = 100) -> Dict[str, int]:
        """Check each eligible receipt once. Returns counts per outcome."""
        cutoff = datetime.now(timezone.utc) - self.min_age
        receipts = await self.store.list_stale_pending(cutoff, self.attempt_ceiling, limit)
        counts = {"checked": 0, "success": 0, "failed": 0, "unknown_pending": 0}

        for receipt in receipts:
            counts["checked"] += 1
            attempts = receipt.poll_attempts + 1
            try:
                result = await self.gateway.get_transaction(receipt.tx_hash)
            except Exception as e:
                await self.store.update_status(
                    receipt.tx_hash, ReceiptStatus.UNKNOWN_PENDING, attempts, last_error=str(e)
                )
                counts["unknown_pending"] += 1
                continue

            if result.status == RpcTransactionStatus.SUCCESS:
                status = ReceiptStatus.SUCCESS
            elif result.status == RpcTransactionStatus.FAILED:
                status = ReceiptStatus.FAILED
                logger.error(
                    f"Reconciliation: tx {receipt.tx_hash[:12]}... for {receipt.subject_type.value} "
                    f"{receipt.subject_hash[:12]}... failed on chain: {result.error}"
                )
            else:
                status = ReceiptStatus.UNKNOWN_PENDING
                if attempts >= self.attempt_ceiling:
                    logger.error(
                        f"Reconciliation: tx {receipt.tx_hash[:12]}... never found after "
                        f"{attempts} checks; giving up"
                    )

            await self.store.update_status(receipt.tx_hash, status, attempts, result.ledger, result.error)
            counts[status.value] += 1

        if counts["checked"]:
            logger.info(f"Receipt reconciliation: {counts}")
        return counts
