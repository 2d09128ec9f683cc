"""
Error Handling Module for PayGuard

This module provides centralized error handling with:
- Custom exception hierarchy
- Standardized error responses
- Nigerian identifier validation errors (BVN, NIN)
- Ledger (Stellar Soroban) and registry error taxonomy
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging
import re

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("payguard.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_BVN = "INVALID_BVN"
    INVALID_NIN = "INVALID_NIN"
    INVALID_HASH = "INVALID_HASH"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PERIOD = "INVALID_PERIOD"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    BATCH_NOT_FOUND = "BATCH_NOT_FOUND"
    STAFF_NOT_FOUND = "STAFF_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    DUPLICATE_BATCH = "DUPLICATE_BATCH"
    ALREADY_REGISTERED_ON_LEDGER = "ALREADY_REGISTERED_ON_LEDGER"

    # External Service Errors (502/503)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    LEDGER_SIMULATION_FAILED = "LEDGER_SIMULATION_FAILED"
    LEDGER_TRANSPORT_ERROR = "LEDGER_TRANSPORT_ERROR"
    LEDGER_NOT_CONFIGURED = "LEDGER_NOT_CONFIGURED"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    REGISTRY_LOOKUP_FAILED = "REGISTRY_LOOKUP_FAILED"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidBVNException(ValidationException):
    """Invalid Bank Verification Number"""

    def __init__(self, bvn: str, message: Optional[str] = None):
        # Never echo the identifier back; only its length
        super().__init__(
            message=message or "Invalid BVN format. Expected 11 digits.",
            field="bvn",
            code=ErrorCode.INVALID_BVN,
            details={"provided_length": len(bvn or ""), "expected_format": "XXXXXXXXXXX (11 digits)"},
        )


class InvalidNINException(ValidationException):
    """Invalid National Identification Number"""

    def __init__(self, nin: str, message: Optional[str] = None):
        super().__init__(
            message=message or "Invalid NIN format. Expected 11 digits.",
            field="nin",
            code=ErrorCode.INVALID_NIN,
            details={"provided_length": len(nin or ""), "expected_format": "XXXXXXXXXXX (11 digits)"},
        )


class InvalidHashException(ValidationException):
    """Malformed identity or batch hash"""

    def __init__(self, value: str, field: str = "identity_hash"):
        super().__init__(
            message=f"Invalid {field}. Expected 64 lower-case hexadecimal characters.",
            field=field,
            code=ErrorCode.INVALID_HASH,
            details={"provided_length": len(value or "")},
        )


class InvalidAmountException(ValidationException):
    """Invalid monetary amount"""

    def __init__(self, amount: Any, field: str = "amount", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid amount: {amount}. Amount must be a positive number.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT,
            details={"provided_amount": str(amount)},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class BatchNotFoundException(NotFoundException):
    """Payroll batch not found"""

    def __init__(self, batch_id: Union[str, UUID]):
        super().__init__(
            resource_type="PayrollBatch",
            resource_id=batch_id,
            code=ErrorCode.BATCH_NOT_FOUND,
        )


class StaffNotFoundException(NotFoundException):
    """Staff identity not found"""

    def __init__(self, identity_hash: str):
        super().__init__(
            resource_type="StaffIdentity",
            resource_id=identity_hash,
            code=ErrorCode.STAFF_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class DuplicateEntryException(ConflictException):
    """Duplicate entry exception"""

    def __init__(
        self,
        resource_type: str,
        field: str,
        value: str,
    ):
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            resource_type=resource_type,
            code=ErrorCode.DUPLICATE_ENTRY,
            details={"field": field, "value": value},
        )


class DuplicateBatchException(ConflictException):
    """Byte-identical payroll content was already uploaded"""

    def __init__(self, batch_hash: str, existing_batch_id: Optional[Union[str, UUID]] = None):
        self.batch_hash = batch_hash
        self.existing_batch_id = existing_batch_id
        super().__init__(
            message="This payroll batch has already been uploaded",
            resource_type="PayrollBatch",
            code=ErrorCode.DUPLICATE_BATCH,
            details={
                "batch_hash": batch_hash,
                "existing_batch_id": str(existing_batch_id) if existing_batch_id else None,
            },
        )


class AlreadyRegisteredOnLedgerException(ConflictException):
    """
    Identity is already registered on the Soroban contract.
    A precondition failure, not a transport error.
    """

    def __init__(self, identity_hash: str):
        self.identity_hash = identity_hash
        super().__init__(
            message="Staff already registered on blockchain",
            resource_type="StaffIdentity",
            code=ErrorCode.ALREADY_REGISTERED_ON_LEDGER,
            details={"identity_hash": identity_hash},
        )


# ============================================================================
# External Service Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service error exception"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        _details = details or {}
        _details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=_details,
            original_error=original_error,
        )


class LedgerException(ExternalServiceException):
    """Base class for Stellar Soroban submission errors"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.LEDGER_TRANSPORT_ERROR,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        super().__init__(
            service_name="Stellar Soroban",
            message=message,
            code=code,
            original_error=original_error,
            details=details,
            status_code=status_code,
        )


class LedgerSimulationException(LedgerException):
    """Transaction simulation failed; nothing was signed or sent"""

    def __init__(self, function_name: str, rpc_error: str):
        self.rpc_error = rpc_error
        super().__init__(
            message=f"Simulation failed for {function_name}: {rpc_error}",
            code=ErrorCode.LEDGER_SIMULATION_FAILED,
            details={"function": function_name, "rpc_error": rpc_error},
        )


class LedgerTransportException(LedgerException):
    """Network / RPC failure while building, sending or polling"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.LEDGER_TRANSPORT_ERROR,
            original_error=original_error,
        )


class LedgerConfigurationException(LedgerException):
    """Contract id or signing key missing"""

    def __init__(self, message: str = "SOROBAN_CONTRACT_ID / STELLAR_SECRET_KEY not configured"):
        super().__init__(
            message=message,
            code=ErrorCode.LEDGER_NOT_CONFIGURED,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# ============================================================================
# Database Exceptions
# ============================================================================

class DatabaseException(AppException):
    """Database error exception"""

    def __init__(
        self,
        message: str = "A database error occurred",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            original_error=original_error,
        )


class RegistryLookupException(DatabaseException):
    """Staff registry could not be read"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.REGISTRY_LOOKUP_FAILED,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    logger.error(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
        503: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# ============================================================================
# Utility Functions
# ============================================================================

_DIGITS_11 = re.compile(r"^\d{11}$")
_HEX_64 = re.compile(r"^[0-9a-f]{64}$")


def validate_bvn(bvn: str) -> str:
    """Validate and clean Nigerian BVN"""
    cleaned = (bvn or "").replace("-", "").replace(" ", "")
    if not _DIGITS_11.match(cleaned):
        raise InvalidBVNException(bvn)
    return cleaned


def validate_nin(nin: str) -> str:
    """Validate and clean Nigerian NIN"""
    cleaned = (nin or "").replace("-", "").replace(" ", "")
    if not _DIGITS_11.match(cleaned):
        raise InvalidNINException(nin)
    return cleaned


def validate_hash(value: str, field: str = "identity_hash") -> str:
    """Validate a 64-char lower-case hex digest"""
    cleaned = (value or "").strip().lower()
    if not _HEX_64.match(cleaned):
        raise InvalidHashException(value, field)
    return cleaned


def validate_amount(
    amount: Any,
    field: str = "amount",
    allow_zero: bool = False,
    maximum: Optional[Decimal] = None,
) -> Decimal:
    """Validate monetary amount"""
    try:
        value = Decimal(str(amount).replace(",", "").strip())
    except (TypeError, ValueError, InvalidOperation):
        raise InvalidAmountException(amount, field)
    if not value.is_finite() or value < 0 or (not allow_zero and value == 0):
        raise InvalidAmountException(amount, field)
    if maximum is not None and value > maximum:
        raise InvalidAmountException(amount, field, message=f"Amount {amount} exceeds maximum of {maximum}")
    return value


__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "InvalidBVNException",
    "InvalidNINException",
    "InvalidHashException",
    "InvalidAmountException",

    # Resource
    "NotFoundException",
    "BatchNotFoundException",
    "StaffNotFoundException",
    "ConflictException",
    "DuplicateEntryException",
    "DuplicateBatchException",
    "AlreadyRegisteredOnLedgerException",

    # External Services
    "ExternalServiceException",
    "LedgerException",
    "LedgerSimulationException",
    "LedgerTransportException",
    "LedgerConfigurationException",

    # Database
    "DatabaseException",
    "RegistryLookupException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",

    # Utilities
    "validate_bvn",
    "validate_nin",
    "validate_hash",
    "validate_amount",
]
