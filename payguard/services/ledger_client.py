"""
PayGuard - Ledger Client

Submits identity registrations and payroll batch proofs to the staff
registry contract on Stellar Soroban, and answers read-only queries.

Submission state machine:
    built -> simulated -> signed -> broadcast -> {confirmed | failed | unknown}

Write calls return as soon as the transaction is broadcast, with status
unknown_pending. Confirmation happens in the background (ConfirmationPoller).
Read calls are simulate-only and return False / None / 0 on any error.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from payguard.models.ledger import LedgerOperation, LedgerSubject, ReceiptStatus
from payguard.services.ledger_reconciler import ConfirmationPoller, ReceiptStore
from payguard.services.soroban_gateway import (
    ContractArg,
    LedgerGateway,
    RpcSendStatus,
    decode_staff_record,
)
from payguard.utils.error_handling import (
    AlreadyRegisteredOnLedgerException,
    AppException,
    InvalidHashException,
    LedgerSimulationException,
    LedgerTransportException,
)

logger = logging.getLogger(__name__)

_HEX = re.compile(r"^[0-9a-f]*$")


class SubmissionStage(str, Enum):
    """Ledger submission lifecycle."""
    BUILT = "built"
    SIMULATED = "simulated"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class LedgerSubmission:
    """Receipt-shaped result of a broadcast write."""
    tx_hash: str
    operation: LedgerOperation
    subject_type: LedgerSubject
    subject_hash: str
    stage: SubmissionStage = SubmissionStage.BROADCAST
    status: ReceiptStatus = ReceiptStatus.UNKNOWN_PENDING
    ledger_sequence: Optional[int] = None


def encode_hash32(hex_hash: str, field: str = "identity_hash") -> bytes:
    """
    Encode a hex digest as the contract's 32-byte key.

    Shorter values are left-padded with zeros, longer ones truncated to
    the first 64 hex characters. Only presence on chain is verified, so
    the narrowing is intentional.
    """
    cleaned = (hex_hash or "").strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned or not _HEX.match(cleaned):
        raise InvalidHashException(hex_hash, field)
    return bytes.fromhex(cleaned[:64].rjust(64, "0"))


class LedgerClient:
    """Staff registry contract client."""

    def __init__(
        self,
        gateway: LedgerGateway,
        poller: Optional[ConfirmationPoller] = None,
        receipt_store: Optional[ReceiptStore] = None,
    ):
        self.gateway = gateway
        self.poller = poller
        self.receipt_store = receipt_store
        # One signing account: build..broadcast must not interleave
        self._sequence_lock = asyncio.Lock()

    # ===========================================
    # WRITE OPERATIONS
    # ===========================================

    async def register_staff(self, identity_hash: str) -> LedgerSubmission:
        """
        Register an identity hash on chain.

        Raises:
            AlreadyRegisteredOnLedgerException: identity is already on chain
            LedgerSimulationException / LedgerTransportException: submission failed
        """
        key = encode_hash32(identity_hash)
        if await self.is_staff_registered(identity_hash):
            logger.info(f"Staff {identity_hash[:12]}... already registered on ledger")
            raise AlreadyRegisteredOnLedgerException(identity_hash)

        return await self._submit(
            LedgerOperation.REGISTER_STAFF,
            LedgerSubject.STAFF,
            identity_hash,
            [ContractArg.bytes32(key)],
        )

    async def revoke_staff(self, identity_hash: str) -> LedgerSubmission:
        """Mark an identity inactive on chain."""
        return await self._submit(
            LedgerOperation.REVOKE_STAFF,
            LedgerSubject.STAFF,
            identity_hash,
            [ContractArg.bytes32(encode_hash32(identity_hash))],
        )

    async def record_payroll_batch(self, batch_hash: str, record_count: int) -> LedgerSubmission:
        """Record a batch content hash and its record count on chain."""
        return await self._submit(
            LedgerOperation.RECORD_PAYROLL_BATCH,
            LedgerSubject.BATCH,
            batch_hash,
            [
                ContractArg.bytes32(encode_hash32(batch_hash, "batch_hash")),
                ContractArg.u32(record_count),
            ],
        )

    async def _submit(
        self,
        operation: LedgerOperation,
        subject_type: LedgerSubject,
        subject_hash: str,
        args: Sequence[ContractArg],
    ) -> LedgerSubmission:
        function_name = operation.value
        stage = SubmissionStage.BUILT

        async with self._sequence_lock:
            try:
                transaction = await self.gateway.build_invocation(function_name, args)
                simulation = await self.gateway.simulate(transaction)
                stage = SubmissionStage.SIMULATED
                if not simulation.success:
                    logger.warning(f"Simulation of {function_name} failed: {simulation.error}")
                    raise LedgerSimulationException(function_name, simulation.error or "unknown error")

                signed = await self.gateway.sign(transaction, simulation)
                stage = SubmissionStage.SIGNED
                sent = await self.gateway.send(signed)
            except AppException:
                raise
            except Exception as e:
                logger.error(f"Ledger {function_name} failed at stage '{stage.value}': {e}")
                raise LedgerTransportException(
                    f"Ledger {function_name} failed after stage '{stage.value}': {e}", original_error=e
                )

        if sent.status in (RpcSendStatus.ERROR, RpcSendStatus.TRY_AGAIN_LATER):
            logger.error(f"Ledger rejected {function_name}: {sent.status.value} {sent.error or ''}")
            raise LedgerTransportException(f"Transaction rejected ({sent.status.value}): {sent.error or 'no detail'}")

        submission = LedgerSubmission(
            tx_hash=sent.tx_hash,
            operation=operation,
            subject_type=subject_type,
            subject_hash=subject_hash,
        )
        logger.info(f"Broadcast {function_name} for {subject_hash[:12]}... (tx={sent.tx_hash[:12]}...)")

        if self.receipt_store is not None:
            try:
                await self.receipt_store.record_submission(submission)
            except Exception as e:
                logger.error(f"Failed to record receipt for tx {sent.tx_hash[:12]}...: {e}")
        if self.poller is not None:
            self.poller.track(sent.tx_hash)

        return submission

    # ===========================================
    # READ-ONLY QUERIES
    # ===========================================

    async def _view(self, function_name: str, args: Sequence[ContractArg] = ()) -> Any:
        try:
            transaction = await self.gateway.build_invocation(function_name, args)
            simulation = await self.gateway.simulate(transaction)
        except Exception as e:
            logger.warning(f"Ledger view {function_name} failed: {e}")
            return None
        if not simulation.success:
            logger.debug(f"Ledger view {function_name} simulation failed: {simulation.error}")
            return None
        return simulation.return_value

    async def _view_hash(self, function_name: str, hex_hash: str) -> Any:
        try:
            key = encode_hash32(hex_hash)
        except InvalidHashException:
            return None
        return await self._view(function_name, [ContractArg.bytes32(key)])

    async def is_staff_registered(self, identity_hash: str) -> bool:
        return bool(await self._view_hash("is_staff_registered", identity_hash))

    async def is_staff_active(self, identity_hash: str) -> bool:
        return bool(await self._view_hash("is_staff_active", identity_hash))

    async def is_batch_recorded(self, batch_hash: str) -> bool:
        return bool(await self._view_hash("is_batch_recorded", batch_hash))

    async def get_staff_record(self, identity_hash: str) -> Optional[dict]:
        value = await self._view_hash("get_staff_record", identity_hash)
        try:
            return decode_staff_record(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not decode staff record: {e}")
            return None

    async def get_total_staff(self) -> int:
        value = await self._view("get_total_staff")
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0

    async def close(self) -> None:
        if self.poller is not None:
            await self.poller.shutdown()
        await self.gateway.close()


# =========================================================================
# GLOBAL INSTANCE
# =========================================================================

_ledger_client: Optional[LedgerClient] = None


def get_ledger_client() -> LedgerClient:
    """
    Get the process-wide ledger client.

    Raises:
        LedgerConfigurationException: contract id or signing key missing
    """
    global _ledger_client
    if _ledger_client is None:
        from payguard.services.ledger_reconciler import SQLReceiptStore
        from payguard.services.soroban_gateway import SorobanLedgerGateway

        gateway = SorobanLedgerGateway()
        store = SQLReceiptStore()
        _ledger_client = LedgerClient(gateway, ConfirmationPoller(gateway, store), store)
    return _ledger_client


async def close_ledger_client():
    """Cancel confirmation polls and close the RPC connection."""
    global _ledger_client
    if _ledger_client:
        await _ledger_client.close()
        _ledger_client = None
