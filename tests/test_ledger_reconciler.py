"""
PayGuard - Ledger Confirmation Tests

Tests for the in-process confirmation poller, the SQL receipt store and
the periodic receipt reconciler.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from payguard.models.ledger import LedgerOperation, LedgerReceipt, LedgerSubject, ReceiptStatus
from payguard.services.ledger_client import LedgerSubmission
from payguard.services.ledger_reconciler import (
    ConfirmationPoller,
    ReceiptReconciler,
    SQLReceiptStore,
)
from payguard.services.soroban_gateway import RpcTransactionStatus


TX_HASH = "ab" * 32


@pytest.fixture
def store():
    mock_store = MagicMock()
    mock_store.update_status = AsyncMock()
    return mock_store


def submission(tx_hash: str) -> LedgerSubmission:
    return LedgerSubmission(
        tx_hash=tx_hash,
        operation=LedgerOperation.RECORD_PAYROLL_BATCH,
        subject_type=LedgerSubject.BATCH,
        subject_hash="cd" * 32,
    )


class TestConfirmationPoller:
    """Test background confirmation polling."""

    @pytest.mark.asyncio
    async def test_confirms_after_not_found(self, fake_gateway, store):
        fake_gateway.tx_statuses[TX_HASH] = [RpcTransactionStatus.NOT_FOUND, RpcTransactionStatus.SUCCESS]
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=5, interval_seconds=0)

        status = await poller.track(TX_HASH)

        assert status == ReceiptStatus.SUCCESS
        store.update_status.assert_awaited_once_with(TX_HASH, ReceiptStatus.SUCCESS, 2, 4242, None)

    @pytest.mark.asyncio
    async def test_failed_on_chain(self, fake_gateway, store):
        fake_gateway.tx_statuses[TX_HASH] = [RpcTransactionStatus.FAILED]
        on_final = MagicMock()
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=5, interval_seconds=0, on_final=on_final)

        status = await poller.track(TX_HASH)

        assert status == ReceiptStatus.FAILED
        store.update_status.assert_awaited_once_with(TX_HASH, ReceiptStatus.FAILED, 1, 4242, "txFAILED")
        on_final.assert_called_once_with(TX_HASH, ReceiptStatus.FAILED)

    @pytest.mark.asyncio
    async def test_left_pending_after_max_attempts(self, fake_gateway, store):
        fake_gateway.tx_statuses[TX_HASH] = [RpcTransactionStatus.NOT_FOUND]
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=3, interval_seconds=0)

        status = await poller.track(TX_HASH)

        assert status == ReceiptStatus.UNKNOWN_PENDING
        store.update_status.assert_awaited_once_with(TX_HASH, ReceiptStatus.UNKNOWN_PENDING, 3, None, None)

    @pytest.mark.asyncio
    async def test_rpc_errors_keep_polling(self, fake_gateway, store):
        fake_gateway.get_transaction_error = ConnectionError("rpc down")
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=2, interval_seconds=0)

        status = await poller.track(TX_HASH)

        assert status == ReceiptStatus.UNKNOWN_PENDING
        args = store.update_status.await_args.args
        assert args[2] == 2
        assert "ConnectionError" in args[4]

    @pytest.mark.asyncio
    async def test_track_is_idempotent(self, fake_gateway, store):
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=1, interval_seconds=10)

        first = poller.track(TX_HASH)
        second = poller.track(TX_HASH)

        assert first is second
        assert poller.pending_count == 1
        await poller.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_without_writing(self, fake_gateway, store):
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=1, interval_seconds=10)
        task = poller.track(TX_HASH)

        await poller.shutdown()

        assert task.cancelled()
        assert poller.pending_count == 0
        store.update_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wait_all(self, fake_gateway, store):
        poller = ConfirmationPoller(fake_gateway, store, max_attempts=2, interval_seconds=0)
        for i in range(3):
            poller.track(f"{i:064x}")

        await poller.wait_all()

        assert store.update_status.await_count == 3


class TestSQLReceiptStore:
    """Test receipt persistence."""

    @pytest.mark.asyncio
    async def test_record_and_update(self, session_factory, db_session):
        receipt_store = SQLReceiptStore(session_factory)

        await receipt_store.record_submission(submission(TX_HASH))
        await receipt_store.update_status(TX_HASH, ReceiptStatus.SUCCESS, 2, ledger_sequence=99)

        result = await db_session.execute(select(LedgerReceipt).where(LedgerReceipt.tx_hash == TX_HASH))
        receipt = result.scalar_one()
        assert receipt.status == ReceiptStatus.SUCCESS
        assert receipt.poll_attempts == 2
        assert receipt.ledger_sequence == 99
        assert receipt.confirmed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_submission_ignored(self, session_factory, db_session):
        receipt_store = SQLReceiptStore(session_factory)

        await receipt_store.record_submission(submission(TX_HASH))
        await receipt_store.record_submission(submission(TX_HASH))

        result = await db_session.execute(select(LedgerReceipt))
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_update_unknown_receipt_is_noop(self, session_factory):
        receipt_store = SQLReceiptStore(session_factory)
        await receipt_store.update_status("ff" * 32, ReceiptStatus.SUCCESS, 1)


class TestReceiptReconciler:
    """Test the periodic reconciliation sweep."""

    @pytest.mark.asyncio
    async def test_reconcile_once(self, fake_gateway, session_factory, db_session):
        receipt_store = SQLReceiptStore(session_factory)
        confirmed, missing = "01" * 32, "02" * 32
        await receipt_store.record_submission(submission(confirmed))
        await receipt_store.record_submission(submission(missing))
        fake_gateway.tx_statuses[missing] = [RpcTransactionStatus.NOT_FOUND]

        reconciler = ReceiptReconciler(fake_gateway, receipt_store)
        reconciler.min_age = timedelta(0)
        await asyncio.sleep(0.01)

        counts = await reconciler.reconcile_once()

        assert counts == {"checked": 2, "success": 1, "failed": 0, "unknown_pending": 1}
        result = await db_session.execute(select(LedgerReceipt).order_by(LedgerReceipt.tx_hash))
        receipts = result.scalars().all()
        assert [r.status for r in receipts] == [ReceiptStatus.SUCCESS, ReceiptStatus.UNKNOWN_PENDING]
        assert all(r.poll_attempts == 1 for r in receipts)

    @pytest.mark.asyncio
    async def test_recent_receipts_left_to_poller(self, fake_gateway, session_factory):
        receipt_store = SQLReceiptStore(session_factory)
        await receipt_store.record_submission(submission(TX_HASH))

        counts = await ReceiptReconciler(fake_gateway, receipt_store).reconcile_once()

        assert counts["checked"] == 0
