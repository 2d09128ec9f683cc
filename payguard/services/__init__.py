"""
PayGuard - Services Package

Business logic services.
"""

from payguard.services.detection_engine import DetectionEngine, DetectionResult
from payguard.services.explanation_enrichment import ExplanationEnricher
from payguard.services.ledger_client import LedgerClient, get_ledger_client, close_ledger_client
from payguard.services.payroll_batch_service import PayrollBatchService
from payguard.services.staff_registration_service import StaffRegistrationService
from payguard.services.staff_registry import SQLStaffRegistry, StaffRegistry

__all__ = [
    "DetectionEngine",
    "DetectionResult",
    "ExplanationEnricher",
    "LedgerClient",
    "get_ledger_client",
    "close_ledger_client",
    "PayrollBatchService",
    "StaffRegistrationService",
    "SQLStaffRegistry",
    "StaffRegistry",
]
