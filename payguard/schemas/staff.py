"""
PayGuard - Staff Schemas

Pydantic schemas for staff registration requests and responses.
Raw identifiers (BVN, NIN, phone) appear only on the request; responses
carry hashes and masked values.
"""

from datetime import date, datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


EmploymentTypeEnum = Literal["permanent", "contract", "temporary"]

LedgerStatusEnum = Literal["submitted", "already_registered", "failed", "not_configured"]


# ===========================================
# REGISTRATION
# ===========================================

class StaffRegistration(BaseModel):
    """Register staff request."""
    full_name: str = Field(..., min_length=1, max_length=200)
    date_of_birth: str = Field(..., description="YYYY-MM-DD")
    bvn: str = Field(..., max_length=20)
    nin: str = Field(..., max_length=20)
    phone_number: Optional[str] = Field(None, max_length=20)

    # Employment
    grade: Optional[str] = Field(None, max_length=50)
    department: Optional[str] = Field(None, max_length=100)
    position: Optional[str] = Field(None, max_length=100)
    employment_type: EmploymentTypeEnum = "permanent"
    hire_date: Optional[date] = None


class StaffResponse(BaseModel):
    """Registered staff response (no raw PII)."""
    id: UUID
    identity_hash: str
    staff_number: Optional[str] = None
    grade: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    is_active: bool
    verified: bool
    ledger_tx_hashes: List[str] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StaffRegistrationResult(BaseModel):
    """Outcome of registration, including the ledger attempt."""
    staff: StaffResponse
    ledger_status: LedgerStatusEnum
    ledger_tx_hash: Optional[str] = None
    ledger_error: Optional[str] = None
    masked_bvn: str
    masked_nin: str


class StaffDeactivationResult(BaseModel):
    """Outcome of deactivation, including the best-effort on-chain revoke."""
    identity_hash: str
    is_active: bool
    ledger_status: LedgerStatusEnum
    ledger_tx_hash: Optional[str] = None
    ledger_error: Optional[str] = None
