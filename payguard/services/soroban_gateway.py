"""
PayGuard - Ledger RPC Gateway

Narrow async interface over the Stellar Soroban RPC, plus the production
implementation built on stellar-sdk.

The gateway owns the signing keypair. It knows nothing about staff or
batches: it builds contract invocations, simulates, signs, sends and
reports transaction status.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple, Optional, Sequence

from stellar_sdk import Keypair, Network, SorobanServerAsync, TransactionBuilder, scval
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from payguard.config import settings
from payguard.utils.error_handling import LedgerConfigurationException

logger = logging.getLogger(__name__)


NETWORK_PASSPHRASES = {
    "TESTNET": Network.TESTNET_NETWORK_PASSPHRASE,
    "MAINNET": Network.PUBLIC_NETWORK_PASSPHRASE,
    "PUBLIC": Network.PUBLIC_NETWORK_PASSPHRASE,
    "FUTURENET": Network.FUTURENET_NETWORK_PASSPHRASE,
}


# =============================================================================
# GATEWAY VALUE TYPES
# =============================================================================

class ArgKind(str, Enum):
    """Contract argument encodings used by the staff registry contract."""
    BYTES32 = "bytes32"
    U32 = "u32"


class ContractArg(NamedTuple):
    kind: ArgKind
    value: Any

    @classmethod
    def bytes32(cls, value: bytes) -> "ContractArg":
        if len(value) != 32:
            raise ValueError(f"bytes32 argument must be 32 bytes, got {len(value)}")
        return cls(ArgKind.BYTES32, value)

    @classmethod
    def u32(cls, value: int) -> "ContractArg":
        if not 0 <= value <= 0xFFFFFFFF:
            raise ValueError(f"u32 argument out of range: {value}")
        return cls(ArgKind.U32, value)


class RpcSendStatus(str, Enum):
    PENDING = "PENDING"
    DUPLICATE = "DUPLICATE"
    TRY_AGAIN_LATER = "TRY_AGAIN_LATER"
    ERROR = "ERROR"


class RpcTransactionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class SimulationResult:
    """Outcome of a simulate call."""
    success: bool
    error: Optional[str] = None
    return_value: Any = None
    raw: Any = None


@dataclass
class SendResult:
    """Outcome of a send call."""
    tx_hash: str
    status: RpcSendStatus
    error: Optional[str] = None


@dataclass
class TransactionStatusResult:
    """Outcome of a get-transaction call."""
    status: RpcTransactionStatus
    ledger: Optional[int] = None
    error: Optional[str] = None


# =============================================================================
# ABSTRACT GATEWAY
# =============================================================================

class LedgerGateway(ABC):
    """Abstract ledger RPC gateway."""

    @abstractmethod
    async def build_invocation(self, function_name: str, args: Sequence[ContractArg]) -> Any:
        """Build an unsigned contract invocation against the configured contract."""
        pass

    @abstractmethod
    async def simulate(self, transaction: Any) -> SimulationResult:
        """Simulate a built transaction."""
        pass

    @abstractmethod
    async def sign(self, transaction: Any, simulation: SimulationResult) -> Any:
        """Attach simulated resources and sign with the ledger account."""
        pass

    @abstractmethod
    async def send(self, signed_transaction: Any) -> SendResult:
        """Broadcast a signed transaction."""
        pass

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> TransactionStatusResult:
        """Look up a broadcast transaction."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass


# =============================================================================
# STELLAR SOROBAN GATEWAY (PRODUCTION IMPLEMENTATION)
# =============================================================================

class SorobanLedgerGateway(LedgerGateway):
    """
    Soroban RPC gateway built on stellar-sdk's async server.

    Contract calls pay 100x the base fee, matching the fee policy used
    for all registry contract writes.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        contract_id: Optional[str] = None,
        network: Optional[str] = None,
    ):
        self.rpc_url = rpc_url or settings.stellar_rpc_url
        self.contract_id = contract_id or settings.soroban_contract_id
        secret = secret_key or settings.stellar_secret_key
        network_name = (network or settings.stellar_network).upper()

        if not self.contract_id or not secret:
            raise LedgerConfigurationException()

        try:
            self._keypair = Keypair.from_secret(secret)
        except Exception as e:
            raise LedgerConfigurationException("Invalid STELLAR_SECRET_KEY") from e

        self.network_passphrase = NETWORK_PASSPHRASES.get(
            network_name, Network.TESTNET_NETWORK_PASSPHRASE
        )
        self.base_fee = settings.stellar_base_fee
        self.tx_timeout = settings.stellar_tx_timeout_seconds
        self._server = SorobanServerAsync(self.rpc_url, client=AiohttpClient())

        logger.info(
            f"SorobanLedgerGateway initialized (network={network_name}, "
            f"contract={self.contract_id[:8]}..., account={self._keypair.public_key[:8]}...)"
        )

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    @staticmethod
    def _to_scval(arg: ContractArg) -> stellar_xdr.SCVal:
        if arg.kind == ArgKind.BYTES32:
            return scval.to_bytes(arg.value)
        if arg.kind == ArgKind.U32:
            return scval.to_uint32(arg.value)
        raise ValueError(f"Unsupported contract argument kind: {arg.kind}")

    async def build_invocation(self, function_name: str, args: Sequence[ContractArg]) -> Any:
        source = await self._server.load_account(self._keypair.public_key)
        return (
            TransactionBuilder(
                source_account=source,
                network_passphrase=self.network_passphrase,
                base_fee=self.base_fee,
            )
            .append_invoke_contract_function_op(
                contract_id=self.contract_id,
                function_name=function_name,
                parameters=[self._to_scval(a) for a in args],
            )
            .set_timeout(self.tx_timeout)
            .build()
        )

    async def simulate(self, transaction: Any) -> SimulationResult:
        response = await self._server.simulate_transaction(transaction)
        if response.error:
            return SimulationResult(success=False, error=response.error, raw=response)

        return_value = None
        if response.results:
            result_xdr = response.results[0].xdr
            return_value = scval.to_native(stellar_xdr.SCVal.from_xdr(result_xdr))
        return SimulationResult(success=True, return_value=return_value, raw=response)

    async def sign(self, transaction: Any, simulation: SimulationResult) -> Any:
        prepared = await self._server.prepare_transaction(
            transaction, simulate_transaction_response=simulation.raw
        )
        prepared.sign(self._keypair)
        return prepared

    async def send(self, signed_transaction: Any) -> SendResult:
        response = await self._server.send_transaction(signed_transaction)
        status = RpcSendStatus(
            response.status.value if isinstance(response.status, SendTransactionStatus) else str(response.status)
        )
        error = response.error_result_xdr if status == RpcSendStatus.ERROR else None
        return SendResult(tx_hash=response.hash, status=status, error=error)

    async def get_transaction(self, tx_hash: str) -> TransactionStatusResult:
        response = await self._server.get_transaction(tx_hash)
        status = RpcTransactionStatus(
            response.status.value if isinstance(response.status, GetTransactionStatus) else str(response.status)
        )
        error = response.result_xdr if status == RpcTransactionStatus.FAILED else None
        return TransactionStatusResult(status=status, ledger=response.ledger, error=error)

    async def close(self) -> None:
        await self._server.close()


def decode_staff_record(value: Any) -> Optional[dict]:
    """Convert the contract's StaffRecord struct into plain values."""
    if not isinstance(value, dict):
        return None
    staff_hash = value.get("staff_hash")
    registered_by = value.get("registered_by")
    return {
        "staff_hash": staff_hash.hex() if isinstance(staff_hash, (bytes, bytearray)) else staff_hash,
        "registered_by": getattr(registered_by, "address", None) or (str(registered_by) if registered_by else None),
        "registered_at": int(value.get("registered_at") or 0),
        "is_active": bool(value.get("is_active")),
    }


__all__ = [
    "ArgKind",
    "ContractArg",
    "RpcSendStatus",
    "RpcTransactionStatus",
    "SimulationResult",
    "SendResult",
    "TransactionStatusResult",
    "LedgerGateway",
    "SorobanLedgerGateway",
    "decode_staff_record",
]
