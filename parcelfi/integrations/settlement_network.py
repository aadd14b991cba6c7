"""Settlement network client interface.

The settlement network moves value between accounts and holds custody
tokens in escrow. The engine consumes it through the `SettlementClient`
protocol; a production implementation wraps the network SDK, tests use
`parcelfi.integrations.mock_network.MockSettlementNetwork`.

Contract notes:
- Every method is async. A call that does not answer within the client's
  own deadline raises `SettlementTimeout`; the effect may or may not have
  been applied remotely.
- Other transport problems raise `SettlementNetworkError`.
- Custody primitives never raise for business rejections; they answer with
  a `CustodyResult` carrying an error code.
- Amounts in `TransferRecord` are in the network's native unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class SettlementNetworkError(Exception):
    """Transport-level failure talking to the settlement network."""
    pass


class SettlementTimeout(SettlementNetworkError):
    """The network did not answer in time; the effect is indeterminate."""
    pass


class RecordUnavailable(SettlementNetworkError):
    """The transfer record (actual amounts) cannot be fetched."""
    pass


class ReceiptStatus(Enum):
    """Consensus status of a submitted transfer."""
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"

    def is_terminal(self) -> bool:
        return self != ReceiptStatus.UNKNOWN


@dataclass(frozen=True)
class TransferReceipt:
    tx_ref: str
    status: ReceiptStatus
    detail: str = ""


@dataclass(frozen=True)
class TransferRecord:
    """What actually moved, as recorded by the network."""
    tx_ref: str
    actual_amount: Decimal
    payer: str
    payee: str


class CustodyErrorCode:
    """Error codes returned by the custody primitives."""
    ALREADY_LOCKED = "ALREADY_LOCKED"
    NOT_LOCKED = "NOT_LOCKED"
    ALREADY_OWNER = "ALREADY_OWNER"
    UNKNOWN_TOKEN = "UNKNOWN_TOKEN"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"


@dataclass(frozen=True)
class CustodyResult:
    ok: bool
    tx_ref: Optional[str] = None
    error_code: Optional[str] = None
    holder: Optional[str] = None
    detail: str = ""


class SettlementClient(Protocol):
    """Settlement network operations consumed by the engine."""

    async def submit_transfer(self, from_account: str, to_account: str, amount: Decimal) -> str:
        """Submit a value transfer and return its transaction reference."""
        ...

    async def get_receipt(self, tx_ref: str) -> TransferReceipt:
        ...

    async def get_record(self, tx_ref: str) -> TransferRecord:
        ...

    async def check_balance(self, account: str) -> Decimal:
        ...

    async def lock_custody(self, token_id: str, owner_account: str) -> CustodyResult:
        ...

    async def release_custody(self, token_id: str) -> CustodyResult:
        ...

    async def transfer_custody(self, token_id: str, new_owner_account: str) -> CustodyResult:
        ...


@runtime_checkable
class ReceiptSubscriber(Protocol):
    """Optional capability: push-style notification of terminal receipts."""

    async def subscribe_receipt(self, tx_ref: str) -> TransferReceipt:
        """Resolve once the transfer reaches a terminal status."""
        ...
