"""
In-memory stand-in for the staff registry contract.

FakeLedgerGateway implements LedgerGateway with the contract's observable
behavior: registrations, revocations and batch records are applied on send,
view functions answer from that state, and duplicate batch records or
zero-count batches fail simulation the way the contract panics.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from payguard.services.soroban_gateway import (
    ContractArg,
    LedgerGateway,
    RpcSendStatus,
    RpcTransactionStatus,
    SendResult,
    SimulationResult,
    TransactionStatusResult,
)

WRITE_FUNCTIONS = {"register_staff", "revoke_staff", "record_payroll_batch"}


class FakeLedgerGateway(LedgerGateway):
    """Configurable fake Soroban gateway."""

    def __init__(self):
        # Contract state
        self.staff: Dict[bytes, bool] = {}
        self.batches: Dict[bytes, int] = {}

        # Failure switches
        self.simulation_error: Optional[str] = None
        self.build_error: Optional[Exception] = None
        self.send_status = RpcSendStatus.PENDING
        self.get_transaction_error: Optional[Exception] = None

        # Confirmation script: tx_hash -> statuses returned in order
        self.tx_statuses: Dict[str, List[RpcTransactionStatus]] = {}
        self.default_tx_status = RpcTransactionStatus.SUCCESS

        # Observations
        self.sent: List[str] = []
        self.writes_in_flight = 0
        self.max_writes_in_flight = 0
        self.closed = False
        self._tx_counter = 0

    async def build_invocation(self, function_name: str, args: Sequence[ContractArg]) -> Any:
        if self.build_error is not None:
            raise self.build_error
        if function_name in WRITE_FUNCTIONS:
            self.writes_in_flight += 1
            self.max_writes_in_flight = max(self.max_writes_in_flight, self.writes_in_flight)
        # Yield so concurrent callers can interleave if nothing serializes them
        await asyncio.sleep(0)
        return {"function": function_name, "args": [a.value for a in args]}

    async def simulate(self, transaction: Any) -> SimulationResult:
        function_name = transaction["function"]
        args = transaction["args"]
        key = args[0] if args else None

        if function_name in WRITE_FUNCTIONS:
            if self.simulation_error:
                self.writes_in_flight -= 1
                return SimulationResult(success=False, error=self.simulation_error)
            if function_name == "record_payroll_batch":
                if key in self.batches:
                    self.writes_in_flight -= 1
                    return SimulationResult(success=False, error="HostError: Error(Contract, #3) batch exists")
                if args[1] == 0:
                    self.writes_in_flight -= 1
                    return SimulationResult(success=False, error="HostError: Error(Contract, #4) empty batch")
            if function_name == "revoke_staff" and key not in self.staff:
                self.writes_in_flight -= 1
                return SimulationResult(success=False, error="HostError: Error(Contract, #2) not found")
            return SimulationResult(success=True)

        if function_name == "is_staff_registered":
            return SimulationResult(success=True, return_value=key in self.staff)
        if function_name == "is_staff_active":
            return SimulationResult(success=True, return_value=self.staff.get(key, False))
        if function_name == "is_batch_recorded":
            return SimulationResult(success=True, return_value=key in self.batches)
        if function_name == "get_total_staff":
            return SimulationResult(success=True, return_value=len(self.staff))
        if function_name == "get_staff_record":
            if key not in self.staff:
                return SimulationResult(success=False, error="HostError: Error(Contract, #2) not found")
            return SimulationResult(success=True, return_value={
                "staff_hash": key,
                "registered_by": "GADMINFAKEACCOUNT",
                "registered_at": 1760000000,
                "is_active": self.staff[key],
            })
        return SimulationResult(success=False, error=f"unknown function {function_name}")

    async def sign(self, transaction: Any, simulation: SimulationResult) -> Any:
        return dict(transaction, signed=True)

    async def send(self, signed_transaction: Any) -> SendResult:
        self.writes_in_flight -= 1
        self._tx_counter += 1
        tx_hash = f"{self._tx_counter:064x}"

        if self.send_status in (RpcSendStatus.ERROR, RpcSendStatus.TRY_AGAIN_LATER):
            return SendResult(tx_hash=tx_hash, status=self.send_status, error="txBAD_SEQ")

        function_name = signed_transaction["function"]
        args = signed_transaction["args"]
        if function_name == "register_staff":
            self.staff[args[0]] = True
        elif function_name == "revoke_staff":
            self.staff[args[0]] = False
        elif function_name == "record_payroll_batch":
            self.batches[args[0]] = args[1]

        self.sent.append(function_name)
        return SendResult(tx_hash=tx_hash, status=RpcSendStatus.PENDING)

    async def get_transaction(self, tx_hash: str) -> TransactionStatusResult:
        if self.get_transaction_error is not None:
            raise self.get_transaction_error
        script = self.tx_statuses.get(tx_hash)
        if script:
            status = script.pop(0) if len(script) > 1 else script[0]
        else:
            status = self.default_tx_status
        if status == RpcTransactionStatus.NOT_FOUND:
            return TransactionStatusResult(status=status)
        error = "txFAILED" if status == RpcTransactionStatus.FAILED else None
        return TransactionStatusResult(status=status, ledger=4242, error=error)

    async def close(self) -> None:
        self.closed = True
