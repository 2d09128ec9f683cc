"""
PayGuard - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from payguard.models.base import BaseModel, TimestampMixin, utcnow
from payguard.models.staff import StaffIdentity, EmploymentType, FieldChannel
from payguard.models.payroll import (
    PayrollBatch,
    PayrollRecord,
    BatchStatus,
    RecordStatus,
)
from payguard.models.flag import Flag, FlagType, FlagResolution
from payguard.models.activity import (
    ActivityLog,
    ActivityAction,
    ActivityEntityType,
    ActivityStatus,
)
from payguard.models.ledger import (
    LedgerReceipt,
    ReceiptStatus,
    LedgerSubject,
    LedgerOperation,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "StaffIdentity",
    "EmploymentType",
    "FieldChannel",
    "PayrollBatch",
    "PayrollRecord",
    "BatchStatus",
    "RecordStatus",
    "Flag",
    "FlagType",
    "FlagResolution",
    "LedgerReceipt",
    "ReceiptStatus",
    "LedgerSubject",
    "LedgerOperation",
    "ActivityLog",
    "ActivityAction",
    "ActivityEntityType",
    "ActivityStatus",
]
