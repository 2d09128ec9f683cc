"""
PayGuard - Staff Registration Tests

Tests for staff registration, ledger proof and deactivation.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from payguard.models.staff import StaffIdentity
from payguard.schemas.staff import StaffRegistration
from payguard.services.identity_hasher import hash_identity
from payguard.services.ledger_client import encode_hash32
from payguard.services.staff_registration_service import StaffRegistrationService
from payguard.services.soroban_gateway import RpcSendStatus
from payguard.utils.error_handling import (
    DuplicateEntryException,
    InvalidBVNException,
    InvalidNINException,
    StaffNotFoundException,
    ValidationException,
)
from payguard.utils.pii_security import PIICategory


def registration(**overrides) -> StaffRegistration:
    data = {
        "full_name": "Adaeze  Okafor",
        "date_of_birth": "1985-03-12",
        "bvn": "22123456789",
        "nin": "33123456789",
        "phone_number": "0803 123 4567",
        "grade": "Grade Level 8",
        "department": "Finance",
    }
    data.update(overrides)
    return StaffRegistration(**data)


class TestRegisterStaff:
    """Test registration and the ledger proof."""

    @pytest.mark.asyncio
    async def test_register_and_prove(self, db_session, ledger, fake_gateway, pii_engine):
        service = StaffRegistrationService(db_session, ledger=ledger)

        result = await service.register_staff(registration())

        year = datetime.now(timezone.utc).year
        expected_hash = hash_identity("Adaeze Okafor", "1985-03-12", "22123456789", "33123456789")
        assert result.ledger_status == "submitted"
        assert result.staff.identity_hash == expected_hash
        assert result.staff.verified is True
        assert result.staff.staff_number == f"PG/{year}/0001"
        assert result.staff.ledger_tx_hashes == [result.ledger_tx_hash]
        assert result.masked_bvn == "22*******89"
        assert result.masked_nin == "331*****789"
        assert fake_gateway.staff[encode_hash32(expected_hash)] is True

        stored = (await db_session.execute(select(StaffIdentity))).scalar_one()
        assert pii_engine.decrypt_field(stored.name_encrypted, PIICategory.FULL_NAME) == "Adaeze Okafor"
        assert stored.phone_hash is not None

    @pytest.mark.asyncio
    async def test_staff_numbers_are_sequential(self, db_session, ledger):
        service = StaffRegistrationService(db_session, ledger=ledger)

        await service.register_staff(registration())
        second = await service.register_staff(
            registration(full_name="Ibrahim Musa", bvn="22999999999", nin="33999999999")
        )

        assert second.staff.staff_number.endswith("/0002")

    @pytest.mark.asyncio
    async def test_duplicate_bvn_rejected(self, db_session, ledger):
        service = StaffRegistrationService(db_session, ledger=ledger)
        await service.register_staff(registration())

        with pytest.raises(DuplicateEntryException):
            await service.register_staff(registration(full_name="Someone Else", nin="33000000001"))

    @pytest.mark.asyncio
    async def test_duplicate_nin_rejected(self, db_session, ledger):
        service = StaffRegistrationService(db_session, ledger=ledger)
        await service.register_staff(registration())

        with pytest.raises(DuplicateEntryException):
            await service.register_staff(registration(full_name="Someone Else", bvn="22000000001"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dob", ["12/03/1985", "1985-3-12", "1985-02-30", "2999-01-01"])
    async def test_invalid_date_of_birth(self, db_session, dob):
        with pytest.raises(ValidationException) as exc_info:
            await StaffRegistrationService(db_session).register_staff(registration(date_of_birth=dob))
        assert exc_info.value.field == "date_of_birth"

    @pytest.mark.asyncio
    async def test_invalid_bvn(self, db_session):
        with pytest.raises(InvalidBVNException):
            await StaffRegistrationService(db_session).register_staff(registration(bvn="2212345"))

    @pytest.mark.asyncio
    async def test_invalid_nin(self, db_session):
        with pytest.raises(InvalidNINException):
            await StaffRegistrationService(db_session).register_staff(registration(nin="abc"))

    @pytest.mark.asyncio
    async def test_invalid_phone(self, db_session):
        with pytest.raises(ValidationException) as exc_info:
            await StaffRegistrationService(db_session).register_staff(registration(phone_number="12ab"))
        assert exc_info.value.field == "phone_number"

    @pytest.mark.asyncio
    async def test_ledger_failure_leaves_unverified(self, db_session, ledger, fake_gateway):
        fake_gateway.send_status = RpcSendStatus.ERROR

        result = await StaffRegistrationService(db_session, ledger=ledger).register_staff(registration())

        assert result.ledger_status == "failed"
        assert result.ledger_error
        assert result.staff.verified is False
        assert (await db_session.execute(select(StaffIdentity))).scalar_one().verified is False

    @pytest.mark.asyncio
    async def test_already_registered_on_chain(self, db_session, ledger, fake_gateway):
        identity_hash = hash_identity("Adaeze Okafor", "1985-03-12", "22123456789", "33123456789")
        fake_gateway.staff[encode_hash32(identity_hash)] = True

        result = await StaffRegistrationService(db_session, ledger=ledger).register_staff(registration())

        assert result.ledger_status == "already_registered"
        assert result.staff.verified is False
        assert fake_gateway.sent == []

    @pytest.mark.asyncio
    async def test_no_ledger_configured(self, db_session):
        result = await StaffRegistrationService(db_session).register_staff(registration())

        assert result.ledger_status == "not_configured"
        assert result.staff.verified is False


class TestLedgerRetry:
    """Test re-proving unverified identities."""

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, db_session, ledger, fake_gateway):
        service = StaffRegistrationService(db_session, ledger=ledger)
        fake_gateway.send_status = RpcSendStatus.ERROR
        result = await service.register_staff(registration())

        fake_gateway.send_status = RpcSendStatus.PENDING
        status = await service.retry_ledger_registration(result.staff.identity_hash)

        assert status == "submitted"
        stored = (await db_session.execute(select(StaffIdentity))).scalar_one()
        assert stored.verified is True
        assert len(stored.ledger_tx_hashes) == 1

    @pytest.mark.asyncio
    async def test_retry_verified_is_noop(self, db_session, ledger, fake_gateway):
        service = StaffRegistrationService(db_session, ledger=ledger)
        result = await service.register_staff(registration())

        assert await service.retry_ledger_registration(result.staff.identity_hash) == "submitted"
        assert fake_gateway.sent == ["register_staff"]

    @pytest.mark.asyncio
    async def test_retry_unknown_identity(self, db_session, ledger):
        with pytest.raises(StaffNotFoundException):
            await StaffRegistrationService(db_session, ledger=ledger).retry_ledger_registration("ab" * 32)


class TestDeactivateStaff:
    """Test deactivation and on-chain revoke."""

    @pytest.mark.asyncio
    async def test_deactivate_revokes_on_chain(self, db_session, ledger, fake_gateway):
        service = StaffRegistrationService(db_session, ledger=ledger)
        registered = await service.register_staff(registration())
        identity_hash = registered.staff.identity_hash

        result = await service.deactivate_staff(identity_hash)

        assert result.is_active is False
        assert result.ledger_status == "submitted"
        assert fake_gateway.staff[encode_hash32(identity_hash)] is False
        stored = (await db_session.execute(select(StaffIdentity))).scalar_one()
        assert stored.is_active is False
        assert stored.ledger_tx_hashes == [registered.ledger_tx_hash, result.ledger_tx_hash]

    @pytest.mark.asyncio
    async def test_deactivate_without_ledger_keeps_row(self, db_session, make_staff):
        staff = await make_staff()

        result = await StaffRegistrationService(db_session).deactivate_staff(staff.identity_hash)

        assert result.ledger_status == "not_configured"
        assert (await db_session.execute(select(StaffIdentity))).scalar_one().is_active is False

    @pytest.mark.asyncio
    async def test_revoke_failure_reported(self, db_session, ledger, make_staff):
        # Never registered on chain, so the contract rejects the revoke
        staff = await make_staff()

        result = await StaffRegistrationService(db_session, ledger=ledger).deactivate_staff(staff.identity_hash)

        assert result.is_active is False
        assert result.ledger_status == "failed"

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, db_session):
        with pytest.raises(StaffNotFoundException):
            await StaffRegistrationService(db_session).deactivate_staff("cd" * 32)
