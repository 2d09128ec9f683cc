"""
PayGuard - Schemas Package

Pydantic schemas for request/response validation.
"""

from payguard.schemas.staff import (
    StaffRegistration,
    StaffResponse,
    StaffRegistrationResult,
    StaffDeactivationResult,
)
from payguard.schemas.payroll import (
    FlagResponse,
    PayrollRecordResponse,
    PayrollBatchResponse,
    BatchIngestResult,
    BatchChainVerification,
)

__all__ = [
    "StaffRegistration",
    "StaffResponse",
    "StaffRegistrationResult",
    "StaffDeactivationResult",
    "FlagResponse",
    "PayrollRecordResponse",
    "PayrollBatchResponse",
    "BatchIngestResult",
    "BatchChainVerification",
]
