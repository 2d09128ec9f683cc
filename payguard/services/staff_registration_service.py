"""
PayGuard - Staff Registration Service

Registers staff identities in the registry and proves them on the ledger.

The registry row is committed before the ledger is contacted. A ledger
failure leaves the identity unverified (the ghost pass will report it as
missing_registry) and is reported in the result, never raised.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payguard.models.activity import ActivityAction, ActivityEntityType
from payguard.models.staff import EmploymentType, FieldChannel, StaffIdentity
from payguard.schemas.staff import (
    StaffDeactivationResult,
    StaffRegistration,
    StaffRegistrationResult,
    StaffResponse,
)
from payguard.services.activity_log_service import ActivityLogService
from payguard.services.identity_hasher import hash_field, hash_identity
from payguard.services.ledger_client import LedgerClient
from payguard.services.staff_registry import SQLStaffRegistry
from payguard.utils.error_handling import (
    AlreadyRegisteredOnLedgerException,
    DuplicateEntryException,
    LedgerException,
    StaffNotFoundException,
    ValidationException,
    validate_bvn,
    validate_nin,
)
from payguard.utils.pii_security import PIICategory, PIIEncryptionEngine, PIIMasker, get_pii_engine

logger = logging.getLogger(__name__)

STAFF_NUMBER_PREFIX = "PG"


class StaffRegistrationService:
    """Service for registering and deactivating staff identities."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerClient] = None,
        pii_engine: Optional[PIIEncryptionEngine] = None,
    ):
        self.db = db
        self.registry = SQLStaffRegistry(db)
        self.activity = ActivityLogService(db)
        self.ledger = ledger
        self.pii_engine = pii_engine or get_pii_engine()

    # ===========================================
    # VALIDATION
    # ===========================================

    @staticmethod
    def _validate(data: StaffRegistration) -> Tuple[str, str, str, str, Optional[str]]:
        name = " ".join(data.full_name.split())
        if not name:
            raise ValidationException("Full name is required", field="full_name")

        dob = data.date_of_birth.strip()
        try:
            parsed = datetime.strptime(dob, "%Y-%m-%d").date()
        except ValueError:
            raise ValidationException(
                "Invalid date format. Use YYYY-MM-DD (e.g., 1990-05-15)", field="date_of_birth"
            )
        if parsed.isoformat() != dob:
            raise ValidationException("Invalid date format. Use YYYY-MM-DD", field="date_of_birth")
        if parsed >= datetime.now(timezone.utc).date():
            raise ValidationException("Date of birth must be in the past", field="date_of_birth")

        bvn = validate_bvn(data.bvn)
        nin = validate_nin(data.nin)

        phone = None
        if data.phone_number:
            phone = data.phone_number.replace(" ", "").replace("-", "")
            if not phone.lstrip("+").isdigit() or not 10 <= len(phone.lstrip("+")) <= 14:
                raise ValidationException("Invalid phone number", field="phone_number")

        return name, dob, bvn, nin, phone

    async def _generate_staff_number(self) -> str:
        """Sequential staff number: PG/YYYY/NNNN."""
        year = datetime.now(timezone.utc).year
        prefix = f"{STAFF_NUMBER_PREFIX}/{year}/"
        result = await self.db.execute(
            select(func.count()).select_from(StaffIdentity).where(
                StaffIdentity.staff_number.like(f"{prefix}%")
            )
        )
        count = result.scalar() or 0
        return f"{prefix}{count + 1:04d}"

    # ===========================================
    # REGISTRATION
    # ===========================================

    async def register_staff(
        self, data: StaffRegistration, actor_id: Optional[uuid.UUID] = None
    ) -> StaffRegistrationResult:
        """
        Register a staff identity.

        Raises:
            ValidationException: bad name, DOB, BVN, NIN or phone
            DuplicateEntryException: identity, BVN or NIN already registered
        """
        name, dob, bvn, nin, phone = self._validate(data)

        identity_hash = hash_identity(name, dob, bvn, nin)
        bvn_hash = hash_field(bvn, "bvn")
        nin_hash = hash_field(nin, "nin")

        if await self.registry.find_by_identity_hash(identity_hash):
            raise DuplicateEntryException("StaffIdentity", "identity_hash", identity_hash)
        if await self.registry.find_by_field_hash(FieldChannel.BVN, bvn_hash):
            raise DuplicateEntryException("StaffIdentity", "bvn", PIIMasker.mask_bvn(bvn))
        if await self.registry.find_by_field_hash(FieldChannel.NIN, nin_hash):
            raise DuplicateEntryException("StaffIdentity", "nin", PIIMasker.mask_nin(nin))

        staff = StaffIdentity(
            identity_hash=identity_hash,
            bvn_hash=bvn_hash,
            nin_hash=nin_hash,
            phone_hash=hash_field(phone, "phone") if phone else None,
            name_encrypted=self.pii_engine.encrypt(name, PIICategory.FULL_NAME),
            dob_encrypted=self.pii_engine.encrypt(dob, PIICategory.DATE_OF_BIRTH),
            staff_number=await self._generate_staff_number(),
            grade=data.grade,
            department=data.department,
            position=data.position,
            employment_type=EmploymentType(data.employment_type),
            hire_date=data.hire_date,
            is_active=True,
            verified=False,
            ledger_tx_hashes=[],
        )
        await self.registry.add(staff)
        self.activity.record(
            ActivityAction.STAFF_REGISTERED,
            ActivityEntityType.STAFF,
            identity_hash,
            actor_id=actor_id,
            details={
                "staff_number": staff.staff_number,
                "grade": staff.grade,
                "department": staff.department,
            },
        )
        await self.db.commit()
        await self.db.refresh(staff)

        logger.info(f"Registered staff {staff.staff_number} ({identity_hash[:12]}...)")

        ledger_status, tx_hash, ledger_error = await self._prove_on_ledger(staff)

        return StaffRegistrationResult(
            staff=StaffResponse.model_validate(staff),
            ledger_status=ledger_status,
            ledger_tx_hash=tx_hash,
            ledger_error=ledger_error,
            masked_bvn=PIIMasker.mask_bvn(bvn),
            masked_nin=PIIMasker.mask_nin(nin),
        )

    async def _prove_on_ledger(self, staff: StaffIdentity) -> Tuple[str, Optional[str], Optional[str]]:
        """Submit the identity hash; returns (ledger_status, tx_hash, error)."""
        if self.ledger is None:
            return "not_configured", None, None

        try:
            submission = await self.ledger.register_staff(staff.identity_hash)
        except AlreadyRegisteredOnLedgerException as e:
            # Proof exists but no tx of ours backs it; stays unverified for review
            logger.warning(f"Staff {staff.identity_hash[:12]}... already on ledger")
            return "already_registered", None, e.message
        except LedgerException as e:
            logger.error(f"Ledger registration failed for {staff.identity_hash[:12]}...: {e.message}")
            return "failed", None, e.message

        await self.registry.mark_verified(staff.identity_hash, submission.tx_hash)
        await self.db.commit()
        await self.db.refresh(staff)
        return "submitted", submission.tx_hash, None

    async def retry_ledger_registration(self, identity_hash: str) -> str:
        """Retry the chain proof for an unverified identity."""
        staff = await self.registry.find_by_identity_hash(identity_hash)
        if staff is None:
            raise StaffNotFoundException(identity_hash)
        if staff.verified:
            return "submitted"
        ledger_status, _, _ = await self._prove_on_ledger(staff)
        return ledger_status

    # ===========================================
    # DEACTIVATION
    # ===========================================

    async def deactivate_staff(
        self, identity_hash: str, actor_id: Optional[uuid.UUID] = None
    ) -> StaffDeactivationResult:
        """
        Deactivate an identity and best-effort revoke it on chain.
        The registry row is kept.
        """
        staff = await self.registry.find_by_identity_hash(identity_hash)
        if staff is None:
            raise StaffNotFoundException(identity_hash)

        staff.is_active = False
        self.activity.record(
            ActivityAction.STAFF_DEACTIVATED,
            ActivityEntityType.STAFF,
            identity_hash,
            actor_id=actor_id,
            details={"staff_number": staff.staff_number},
        )
        await self.db.commit()
        logger.info(f"Deactivated staff {identity_hash[:12]}...")

        ledger_status, tx_hash, ledger_error = "not_configured", None, None
        if self.ledger is not None:
            try:
                submission = await self.ledger.revoke_staff(identity_hash)
                ledger_status, tx_hash = "submitted", submission.tx_hash
                tx_hashes = list(staff.ledger_tx_hashes or [])
                tx_hashes.append(submission.tx_hash)
                staff.ledger_tx_hashes = tx_hashes
                await self.db.commit()
            except LedgerException as e:
                logger.error(f"Ledger revoke failed for {identity_hash[:12]}...: {e.message}")
                ledger_status, ledger_error = "failed", e.message

        return StaffDeactivationResult(
            identity_hash=identity_hash,
            is_active=False,
            ledger_status=ledger_status,
            ledger_tx_hash=tx_hash,
            ledger_error=ledger_error,
        )
