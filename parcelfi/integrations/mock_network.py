"""
Mock settlement network for testing.

Simulates value transfers, consensus receipts, transfer records and custody
token escrow without network calls. Every failure mode the engine has to
survive can be scripted: slow receipts, failed receipts, missing records,
wrong recorded amounts, custody rejections and custody timeouts that did or
did not take effect remotely.
"""

from __future__ import annotations

import asyncio
import secrets
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple

from parcelfi.integrations.settlement_network import (
    CustodyErrorCode,
    CustodyResult,
    ReceiptStatus,
    RecordUnavailable,
    SettlementNetworkError,
    SettlementTimeout,
    TransferReceipt,
    TransferRecord,
)


@dataclass
class TransferScript:
    """How the network will treat the next submitted transfer."""
    status: ReceiptStatus = ReceiptStatus.SUCCESS
    polls_until_final: int = 0
    record_available: bool = True
    recorded_amount: Optional[Decimal] = None
    detail: str = ""


@dataclass
class CustodyFault:
    """Fault injected into the next call of one custody primitive."""
    timeouts: int = 0
    apply_on_timeout: bool = False
    error_code: Optional[str] = None


@dataclass
class _Transfer:
    from_account: str
    to_account: str
    amount: Decimal
    script: TransferScript
    polls: int = 0


@dataclass
class _Token:
    owner: str
    locked_by: Optional[str] = None


class MockSettlementNetwork:
    """
    Deterministic in-memory settlement network.

    Example:
        network = MockSettlementNetwork()
        network.fund_account("0.0.1001", Decimal("50000"))
        network.mint_token("parcel-7", owner="0.0.1001")
        network.script_next_transfer(polls_until_final=3)
    """

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._balances: Dict[str, Decimal] = defaultdict(Decimal)
        self._tokens: Dict[str, _Token] = {}
        self._transfers: Dict[str, _Transfer] = {}
        self._scripts: Deque[TransferScript] = deque()
        self._custody_faults: Dict[str, Deque[CustodyFault]] = defaultdict(deque)
        self._receipt_errors = 0
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Test set-up
    # -------------------------------------------------------------------------

    def fund_account(self, account: str, amount: Decimal) -> None:
        with self._lock:
            self._balances[account] += amount

    def mint_token(self, token_id: str, owner: str) -> None:
        with self._lock:
            self._tokens[token_id] = _Token(owner=owner)

    def script_next_transfer(self, **kwargs: Any) -> TransferScript:
        script = TransferScript(**kwargs)
        with self._lock:
            self._scripts.append(script)
        return script

    def inject_custody_fault(self, action: str, **kwargs: Any) -> CustodyFault:
        """Queue a fault for the next `lock`, `release` or `transfer` call."""
        if action not in ("lock", "release", "transfer"):
            raise ValueError(f"unknown custody action: {action}")
        fault = CustodyFault(**kwargs)
        with self._lock:
            self._custody_faults[action].append(fault)
        return fault

    def fail_next_receipt_polls(self, count: int) -> None:
        """Make the next `count` receipt lookups raise a transport error."""
        with self._lock:
            self._receipt_errors = count

    def record_external_transfer(
        self,
        from_account: str,
        to_account: str,
        amount: Decimal,
        **script: Any,
    ) -> str:
        """Register a transfer made outside the engine and return its reference."""
        with self._lock:
            tx_ref = self._new_tx_ref()
            self._transfers[tx_ref] = _Transfer(
                from_account, to_account, amount, TransferScript(**script)
            )
            self._settle(self._transfers[tx_ref])
            return tx_ref

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def balance_of(self, account: str) -> Decimal:
        with self._lock:
            return self._balances[account]

    def token_owner(self, token_id: str) -> str:
        with self._lock:
            return self._tokens[token_id].owner

    def token_locked_by(self, token_id: str) -> Optional[str]:
        with self._lock:
            return self._tokens[token_id].locked_by

    def call_count(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    # -------------------------------------------------------------------------
    # SettlementClient
    # -------------------------------------------------------------------------

    async def submit_transfer(self, from_account: str, to_account: str, amount: Decimal) -> str:
        await self._enter("submit_transfer", from_account, to_account, amount)
        with self._lock:
            script = self._scripts.popleft() if self._scripts else TransferScript()
            if self._balances[from_account] < amount and script.status == ReceiptStatus.SUCCESS:
                script = TransferScript(
                    status=ReceiptStatus.FAILURE,
                    polls_until_final=script.polls_until_final,
                    detail="INSUFFICIENT_PAYER_BALANCE",
                )
            tx_ref = self._new_tx_ref(from_account)
            transfer = _Transfer(from_account, to_account, amount, script)
            self._transfers[tx_ref] = transfer
            self._settle(transfer)
            return tx_ref

    async def get_receipt(self, tx_ref: str) -> TransferReceipt:
        await self._enter("get_receipt", tx_ref)
        with self._lock:
            if self._receipt_errors > 0:
                self._receipt_errors -= 1
                raise SettlementNetworkError("receipt query failed")
            transfer = self._transfers.get(tx_ref)
            if transfer is None:
                return TransferReceipt(tx_ref, ReceiptStatus.FAILURE, "INVALID_TRANSACTION_ID")
            if transfer.polls < transfer.script.polls_until_final:
                transfer.polls += 1
                return TransferReceipt(tx_ref, ReceiptStatus.UNKNOWN)
            return TransferReceipt(tx_ref, transfer.script.status, transfer.script.detail)

    async def get_record(self, tx_ref: str) -> TransferRecord:
        await self._enter("get_record", tx_ref)
        with self._lock:
            transfer = self._transfers.get(tx_ref)
            if transfer is None or not transfer.script.record_available:
                raise RecordUnavailable(f"record not available for {tx_ref}")
            amount = transfer.script.recorded_amount
            return TransferRecord(
                tx_ref=tx_ref,
                actual_amount=amount if amount is not None else transfer.amount,
                payer=transfer.from_account,
                payee=transfer.to_account,
            )

    async def check_balance(self, account: str) -> Decimal:
        await self._enter("check_balance", account)
        return self.balance_of(account)

    async def lock_custody(self, token_id: str, owner_account: str) -> CustodyResult:
        await self._enter("lock_custody", token_id, owner_account)

        def apply() -> CustodyResult:
            token = self._tokens.get(token_id)
            if token is None:
                return CustodyResult(ok=False, error_code=CustodyErrorCode.UNKNOWN_TOKEN)
            if token.locked_by is not None:
                return CustodyResult(
                    ok=False,
                    error_code=CustodyErrorCode.ALREADY_LOCKED,
                    holder=token.locked_by,
                )
            if token.owner != owner_account:
                return CustodyResult(ok=False, error_code=CustodyErrorCode.NOT_AUTHORIZED)
            token.locked_by = owner_account
            return CustodyResult(ok=True, tx_ref=self._new_tx_ref(), holder=owner_account)

        return self._custody_call("lock", apply)

    async def release_custody(self, token_id: str) -> CustodyResult:
        await self._enter("release_custody", token_id)

        def apply() -> CustodyResult:
            token = self._tokens.get(token_id)
            if token is None:
                return CustodyResult(ok=False, error_code=CustodyErrorCode.UNKNOWN_TOKEN)
            if token.locked_by is None:
                return CustodyResult(ok=False, error_code=CustodyErrorCode.NOT_LOCKED)
            token.locked_by = None
            return CustodyResult(ok=True, tx_ref=self._new_tx_ref(), holder=token.owner)

        return self._custody_call("release", apply)

    async def transfer_custody(self, token_id: str, new_owner_account: str) -> CustodyResult:
        await self._enter("transfer_custody", token_id, new_owner_account)

        def apply() -> CustodyResult:
            token = self._tokens.get(token_id)
            if token is None:
                return CustodyResult(ok=False, error_code=CustodyErrorCode.UNKNOWN_TOKEN)
            if token.locked_by is None:
                if token.owner == new_owner_account:
                    return CustodyResult(
                        ok=False,
                        error_code=CustodyErrorCode.ALREADY_OWNER,
                        holder=token.owner,
                    )
                return CustodyResult(ok=False, error_code=CustodyErrorCode.NOT_LOCKED)
            token.owner = new_owner_account
            token.locked_by = None
            return CustodyResult(ok=True, tx_ref=self._new_tx_ref(), holder=new_owner_account)

        return self._custody_call("transfer", apply)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _enter(self, method: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((method, args))
        # Always yield so concurrent tasks interleave at every network call
        await asyncio.sleep(self.latency_seconds)

    def _custody_call(self, action: str, apply: Any) -> CustodyResult:
        with self._lock:
            faults = self._custody_faults[action]
            if faults:
                fault = faults[0]
                if fault.timeouts > 0:
                    fault.timeouts -= 1
                    if fault.apply_on_timeout:
                        apply()
                        fault.apply_on_timeout = False
                    if fault.timeouts == 0 and fault.error_code is None:
                        faults.popleft()
                    raise SettlementTimeout(f"custody {action} timed out")
                faults.popleft()
                if fault.error_code is not None:
                    return CustodyResult(ok=False, error_code=fault.error_code, detail="injected")
            return apply()

    def _settle(self, transfer: _Transfer) -> None:
        if transfer.script.status == ReceiptStatus.SUCCESS:
            self._balances[transfer.from_account] -= transfer.amount
            self._balances[transfer.to_account] += transfer.amount

    @staticmethod
    def _new_tx_ref(account: str = "0.0.2") -> str:
        return f"{account}@{secrets.token_hex(8)}"


class SubscribingMockNetwork(MockSettlementNetwork):
    """Mock network that also pushes terminal receipts to subscribers."""

    def __init__(self, latency_seconds: float = 0.0, poll_interval_seconds: float = 0.001):
        super().__init__(latency_seconds=latency_seconds)
        self.poll_interval_seconds = poll_interval_seconds

    async def subscribe_receipt(self, tx_ref: str) -> TransferReceipt:
        with self._lock:
            self.calls.append(("subscribe_receipt", (tx_ref,)))
        while True:
            with self._lock:
                transfer = self._transfers.get(tx_ref)
                if transfer is None:
                    return TransferReceipt(tx_ref, ReceiptStatus.FAILURE, "INVALID_TRANSACTION_ID")
                if transfer.polls >= transfer.script.polls_until_final:
                    return TransferReceipt(tx_ref, transfer.script.status, transfer.script.detail)
                transfer.polls += 1
            await asyncio.sleep(self.poll_interval_seconds)
