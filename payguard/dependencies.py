"""
PayGuard - FastAPI Dependencies

Service providers for host applications that mount their own routers.
"""

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from payguard.config import settings
from payguard.database import get_async_session
from payguard.services.explanation_enrichment import get_enricher
from payguard.services.ledger_client import LedgerClient, get_ledger_client
from payguard.services.payroll_batch_service import PayrollBatchService
from payguard.services.staff_registration_service import StaffRegistrationService


def get_optional_ledger_client() -> Optional[LedgerClient]:
    """Ledger client, or None when the contract or signing key is not configured."""
    if not settings.ledger_configured:
        return None
    return get_ledger_client()


async def get_payroll_batch_service(
    db: AsyncSession = Depends(get_async_session),
    ledger: Optional[LedgerClient] = Depends(get_optional_ledger_client),
) -> PayrollBatchService:
    return PayrollBatchService(db, ledger=ledger, enricher=get_enricher())


async def get_staff_registration_service(
    db: AsyncSession = Depends(get_async_session),
    ledger: Optional[LedgerClient] = Depends(get_optional_ledger_client),
) -> StaffRegistrationService:
    return StaffRegistrationService(db, ledger=ledger)
