"""
PayGuard - Celery Tasks

Periodic ledger follow-up: receipt reconciliation and retries of chain
proofs that failed at request time.
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from payguard.database import async_session_factory, close_db

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_ledger_client():
    """
    Fresh client per task run; the RPC session is bound to the task's loop.
    No in-process poller: receipts are left for the reconciliation sweep.
    """
    from payguard.services.ledger_client import LedgerClient
    from payguard.services.ledger_reconciler import SQLReceiptStore
    from payguard.services.soroban_gateway import SorobanLedgerGateway

    gateway = SorobanLedgerGateway()
    return LedgerClient(gateway, receipt_store=SQLReceiptStore())


# ===========================================
# RECEIPT RECONCILIATION
# ===========================================

@shared_task(name='payguard.tasks.celery_tasks.reconcile_pending_receipts_task')
def reconcile_pending_receipts_task(limit: int = 100) -> Dict[str, Any]:
    """Re-check unknown_pending ledger receipts."""
    return run_async(_reconcile_pending_receipts(limit))


async def _reconcile_pending_receipts(limit: int) -> Dict[str, Any]:
    from payguard.config import settings
    from payguard.services.ledger_reconciler import ReceiptReconciler, SQLReceiptStore
    from payguard.services.soroban_gateway import SorobanLedgerGateway

    if not settings.ledger_configured:
        return {"skipped": "ledger not configured"}

    gateway = SorobanLedgerGateway()
    try:
        return await ReceiptReconciler(gateway, SQLReceiptStore()).reconcile_once(limit)
    finally:
        await gateway.close()
        await close_db()


# ===========================================
# CHAIN PROOF RETRIES
# ===========================================

@shared_task(name='payguard.tasks.celery_tasks.retry_unverified_staff_task')
def retry_unverified_staff_task(limit: int = 50) -> Dict[str, Any]:
    """Retry ledger registration for identities still unverified."""
    return run_async(_retry_unverified_staff(limit))


async def _retry_unverified_staff(limit: int) -> Dict[str, Any]:
    from payguard.config import settings
    from payguard.services.staff_registration_service import StaffRegistrationService
    from payguard.services.staff_registry import SQLStaffRegistry

    if not settings.ledger_configured:
        return {"skipped": "ledger not configured"}

    counts = {"checked": 0, "submitted": 0, "already_registered": 0, "failed": 0}
    ledger = _build_ledger_client()
    try:
        async with async_session_factory() as db:
            pending = await SQLStaffRegistry(db).list_unverified(limit)
            service = StaffRegistrationService(db, ledger=ledger)
            for staff in pending:
                counts["checked"] += 1
                status = await service.retry_ledger_registration(staff.identity_hash)
                counts[status] = counts.get(status, 0) + 1
    finally:
        await ledger.close()
        await close_db()

    logger.info(f"Unverified staff retry: {counts}")
    return counts


@shared_task(name='payguard.tasks.celery_tasks.retry_failed_batches_task')
def retry_failed_batches_task(limit: int = 20) -> Dict[str, Any]:
    """Retry ledger recording for batches not yet chain-proven."""
    return run_async(_retry_failed_batches(limit))


async def _retry_failed_batches(limit: int) -> Dict[str, Any]:
    from payguard.config import settings
    from payguard.models.payroll import BatchStatus
    from payguard.services.payroll_batch_service import PayrollBatchService

    if not settings.ledger_configured:
        return {"skipped": "ledger not configured"}

    counts = {"checked": 0, "verified": 0, "failed": 0}
    ledger = _build_ledger_client()
    try:
        async with async_session_factory() as db:
            service = PayrollBatchService(db, ledger=ledger)
            for batch in await service.list_failed_batches(limit):
                counts["checked"] += 1
                batch = await service.retry_ledger_recording(batch.id)
                if batch.status == BatchStatus.VERIFIED:
                    counts["verified"] += 1
                else:
                    counts["failed"] += 1
    finally:
        await ledger.close()
        await close_db()

    logger.info(f"Failed batch retry: {counts}")
    return counts
