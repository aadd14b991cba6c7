"""
Settlement Verifier

Turns a transaction reference into a verdict: confirm(tx_ref) -> outcome.

    ┌──────────────┐   terminal receipt?   ┌──────────────┐
    │ subscribe or │──────── no ──────────►│   PENDING    │
    │ bounded poll │                       └──────────────┘
    └──────┬───────┘
           │ yes
           ▼
    failure receipt ─────────────────────► FAILED
           │ success
           ▼
    transfer record ── unavailable ──────► CONFIRMED (unverified amount)
           │                                or PENDING in strict mode
           ▼
    |actual - expected| <= tolerance ────► CONFIRMED
           │ otherwise
           ▼
                                           MISMATCHED

Running out of polls is never reported as FAILED: the transfer may still
land, so the caller is told to try again later.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from parcelfi.core import utc_now
from parcelfi.integrations.settlement_network import (
    ReceiptStatus,
    ReceiptSubscriber,
    SettlementClient,
    SettlementNetworkError,
    TransferReceipt,
)
from parcelfi.settlement.config import SettlementConfig
from parcelfi.settlement.models import SettlementRecord, VerificationOutcome
from parcelfi.settlement.observability import ErrorCode, LendingLayer, get_logger
from parcelfi.settlement.store import LendingStore


def within_tolerance(expected: Decimal, actual: Decimal, tolerance: Decimal) -> bool:
    return abs(actual - expected) <= tolerance


class SettlementVerifier:
    """
    Confirms transfers against the settlement network.

    The verifier is the only component that decides a SettlementRecord's
    outcome. It never raises for network trouble; unknown stays PENDING.
    """

    def __init__(
        self,
        client: SettlementClient,
        config: Optional[SettlementConfig] = None,
        store: Optional[LendingStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._client = client
        self._config = config or SettlementConfig()
        self._store = store
        self._clock = clock
        self._logger = get_logger("verifier", LendingLayer.VERIFIER)

    async def confirm(
        self,
        tx_ref: str,
        expected_amount: Decimal,
        payer: Optional[str] = None,
        payee: Optional[str] = None,
        loan_id: Optional[str] = None,
    ) -> SettlementRecord:
        """Reach a verdict for `tx_ref` within the configured wait bound."""
        record = SettlementRecord(
            tx_ref=tx_ref,
            expected_amount=expected_amount,
            payer=payer,
            payee=payee,
            created_at=self._clock(),
        )
        attempt_id = None
        if self._store is not None:
            attempt_id = self._store.record_attempt(
                "verify_transfer", tx_ref, loan_id=loan_id, expected_amount=expected_amount,
            )

        receipt = await self._await_terminal_receipt(record)
        if receipt is None:
            record.outcome = VerificationOutcome.PENDING
            record.detail = f"no terminal receipt after {record.retry_count} polls"
            self._logger.warning(
                "Transfer not final within confirmation budget",
                error_code=ErrorCode.SETTLEMENT_PENDING,
                tx_ref=tx_ref,
                retry_count=record.retry_count,
                loan_id=loan_id,
            )
        elif receipt.status == ReceiptStatus.FAILURE:
            record.outcome = VerificationOutcome.FAILED
            record.detail = receipt.detail or "transfer failed"
            self._logger.warning(
                "Transfer failed on the settlement network",
                error_code=ErrorCode.SETTLEMENT_FAILED,
                tx_ref=tx_ref,
                detail=record.detail,
                loan_id=loan_id,
            )
        else:
            await self._reconcile_amount(record, loan_id)

        if self._store is not None and attempt_id is not None:
            self._store.complete_attempt(attempt_id, record.outcome.value, record.detail or None)
        return record

    async def _await_terminal_receipt(self, record: SettlementRecord) -> Optional[TransferReceipt]:
        loop = asyncio.get_running_loop()
        # One deadline covers the subscription and any polling fallback
        deadline = loop.time() + self._config.hard_timeout_seconds.get()

        if self._config.prefer_subscription.get() and isinstance(self._client, ReceiptSubscriber):
            try:
                return await asyncio.wait_for(
                    self._client.subscribe_receipt(record.tx_ref), timeout=deadline - loop.time(),
                )
            except asyncio.TimeoutError:
                return None
            except SettlementNetworkError as e:
                self._logger.info(
                    "Receipt subscription unavailable, polling instead",
                    tx_ref=record.tx_ref,
                    error=str(e),
                )

        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(self._poll(record), timeout=remaining)
        except asyncio.TimeoutError:
            return None

    async def _poll(self, record: SettlementRecord) -> Optional[TransferReceipt]:
        max_retries = self._config.max_retries.get()
        delay = self._config.retry_delay_seconds.get()

        for attempt in range(max_retries):
            try:
                receipt = await self._client.get_receipt(record.tx_ref)
            except SettlementNetworkError as e:
                self._logger.debug("Receipt query failed", tx_ref=record.tx_ref, error=str(e))
                receipt = None

            if receipt is not None and receipt.status.is_terminal():
                return receipt

            record.retry_count += 1
            if attempt < max_retries - 1:
                await asyncio.sleep(delay)
        return None

    async def _reconcile_amount(self, record: SettlementRecord, loan_id: Optional[str]) -> None:
        try:
            tx_record = await self._client.get_record(record.tx_ref)
        except SettlementNetworkError as e:
            if self._config.accept_unverified_amount.get():
                record.outcome = VerificationOutcome.CONFIRMED
                record.unverified_amount = True
                record.confirmed_at = self._clock()
                record.detail = "transfer record unavailable; amount not verified"
                self._logger.warning(
                    "Transfer confirmed without amount verification",
                    error_code=ErrorCode.UNVERIFIED_AMOUNT,
                    tx_ref=record.tx_ref,
                    expected_amount=str(record.expected_amount),
                    loan_id=loan_id,
                    error=str(e),
                )
            else:
                record.outcome = VerificationOutcome.PENDING
                record.detail = "transfer record unavailable"
                self._logger.warning(
                    "Transfer record unavailable; amount cannot be verified yet",
                    error_code=ErrorCode.SETTLEMENT_PENDING,
                    tx_ref=record.tx_ref,
                    loan_id=loan_id,
                )
            return

        actual = tx_record.actual_amount / self._config.units_per_accounting_unit.get()
        record.actual_amount = actual

        if record.payee is not None and tx_record.payee != record.payee:
            record.outcome = VerificationOutcome.MISMATCHED
            record.detail = f"payee {tx_record.payee} does not match {record.payee}"
        elif record.payer is not None and tx_record.payer != record.payer:
            record.outcome = VerificationOutcome.MISMATCHED
            record.detail = f"payer {tx_record.payer} does not match {record.payer}"
        elif not within_tolerance(record.expected_amount, actual, self._config.amount_tolerance.get()):
            record.outcome = VerificationOutcome.MISMATCHED
            record.detail = f"moved {actual}, expected {record.expected_amount}"
        else:
            record.outcome = VerificationOutcome.CONFIRMED
            record.confirmed_at = self._clock()
            self._logger.info(
                "Transfer confirmed",
                tx_ref=record.tx_ref,
                amount=str(actual),
                retry_count=record.retry_count,
                loan_id=loan_id,
            )
            return

        self._logger.warning(
            "Transfer does not match expectation",
            error_code=ErrorCode.AMOUNT_MISMATCH,
            tx_ref=record.tx_ref,
            detail=record.detail,
            loan_id=loan_id,
        )
