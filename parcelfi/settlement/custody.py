"""
Collateral Custody Coordinator

Sole owner of the custody primitives on the settlement network: lock a
parcel's custody token in escrow, release it back to its owner, or move it
to a new owner on liquidation.

Each call:
    1. is written to the store's attempt log before it is issued,
    2. is retried with backoff when the network times out,
    3. resolves to a typed CustodyOutcome instead of raising.

A timed-out call may still have taken effect. When a retry finds the
effect already in place (token locked by the same owner, already released,
already owned by the new owner) the outcome is ALREADY_APPLIED and the
effect is not applied a second time.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from parcelfi.integrations.settlement_network import (
    CustodyErrorCode,
    CustodyResult,
    SettlementClient,
    SettlementNetworkError,
    SettlementTimeout,
)
from parcelfi.settlement.config import CustodyConfig
from parcelfi.settlement.observability import ErrorCode, LendingLayer, get_logger
from parcelfi.settlement.resilience import BackoffStrategy, RetryExhaustedError, RetryMetrics, RetryPolicy
from parcelfi.settlement.store import LendingStore


class CustodyAction(Enum):
    LOCK = "lock"
    RELEASE = "release"
    TRANSFER = "transfer"


class CustodyStatus(Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    FAILED = "failed"
    # Timeouts exhausted the retry budget; the remote effect is unknown
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CustodyOutcome:
    action: CustodyAction
    token_id: str
    status: CustodyStatus
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status in (CustodyStatus.APPLIED, CustodyStatus.ALREADY_APPLIED)

    @property
    def previously_applied(self) -> bool:
        return self.status == CustodyStatus.ALREADY_APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "token_id": self.token_id,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "error": self.error,
            "attempts": self.attempts,
        }


class CustodyCoordinator:
    """
    Locks, releases and transfers custody tokens.

    Example:
        outcome = await coordinator.lock("parcel-7", "0.0.1001", loan_id=loan.loan_id)
        if not outcome.ok:
            ...
    """

    def __init__(
        self,
        client: SettlementClient,
        store: LendingStore,
        config: Optional[CustodyConfig] = None,
    ):
        self._client = client
        self._store = store
        self._config = config or CustodyConfig()
        self._logger = get_logger("custody", LendingLayer.CUSTODY)
        self._metrics = RetryMetrics()
        self._metrics_lock = threading.Lock()

    @property
    def retry_metrics(self) -> RetryMetrics:
        """Retry counters accumulated over every custody call."""
        with self._metrics_lock:
            total = RetryMetrics()
            total.add(self._metrics)
            return total

    async def lock(self, token_id: str, owner_account: str, loan_id: Optional[str] = None) -> CustodyOutcome:
        """Escrow the token on behalf of `owner_account`."""
        def already_applied(result: CustodyResult) -> bool:
            return (
                result.error_code == CustodyErrorCode.ALREADY_LOCKED
                and result.holder == owner_account
            )

        return await self._execute(
            CustodyAction.LOCK,
            token_id,
            lambda: self._client.lock_custody(token_id, owner_account),
            already_applied,
            loan_id=loan_id,
            owner=owner_account,
        )

    async def release(self, token_id: str, loan_id: Optional[str] = None) -> CustodyOutcome:
        """Return the token from escrow. Releasing a released token is a no-op."""
        return await self._execute(
            CustodyAction.RELEASE,
            token_id,
            lambda: self._client.release_custody(token_id),
            lambda result: result.error_code == CustodyErrorCode.NOT_LOCKED,
            loan_id=loan_id,
        )

    async def transfer_ownership(
        self,
        token_id: str,
        new_owner_account: str,
        loan_id: Optional[str] = None,
    ) -> CustodyOutcome:
        """Move the escrowed token to `new_owner_account`."""
        return await self._execute(
            CustodyAction.TRANSFER,
            token_id,
            lambda: self._client.transfer_custody(token_id, new_owner_account),
            lambda result: result.error_code == CustodyErrorCode.ALREADY_OWNER,
            loan_id=loan_id,
            new_owner=new_owner_account,
        )

    def _record_metrics(self, policy: RetryPolicy) -> None:
        with self._metrics_lock:
            self._metrics.add(policy.metrics)

    def _retry_policy(self, on_retry: Callable[[int, Exception, float], None]) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self._config.max_attempts.get(),
            base_delay_seconds=self._config.base_delay_seconds.get(),
            backoff_strategy=BackoffStrategy.from_name(self._config.backoff.get()),
            retryable_exceptions=(SettlementTimeout,),
            on_retry=on_retry,
        )

    async def _execute(
        self,
        action: CustodyAction,
        token_id: str,
        call: Callable[[], Awaitable[CustodyResult]],
        already_applied: Callable[[CustodyResult], bool],
        loan_id: Optional[str] = None,
        **details: Any,
    ) -> CustodyOutcome:
        attempts = 0
        timed_out = False

        async def attempt() -> CustodyResult:
            nonlocal attempts
            attempts += 1
            attempt_id = self._store.record_attempt(
                f"custody_{action.value}", token_id, loan_id=loan_id, attempt=attempts, **details,
            )
            try:
                result = await call()
            except SettlementNetworkError as e:
                self._store.complete_attempt(attempt_id, "error", str(e) or type(e).__name__)
                raise
            self._store.complete_attempt(
                attempt_id, "ok" if result.ok else "rejected", result.error_code,
            )
            return result

        def on_retry(n: int, exc: Exception, delay: float) -> None:
            nonlocal timed_out
            timed_out = True
            self._logger.warning(
                f"Custody {action.value} timed out, retrying",
                token_id=token_id,
                loan_id=loan_id,
                attempt=n,
                delay_seconds=delay,
            )

        policy = self._retry_policy(on_retry)
        try:
            result = await policy.execute(attempt)
        except RetryExhaustedError as e:
            self._logger.error(
                f"Custody {action.value} outcome unknown after {attempts} attempts",
                error_code=ErrorCode.CUSTODY_FAILED,
                token_id=token_id,
                loan_id=loan_id,
                error=str(e.last_exception),
            )
            return CustodyOutcome(action, token_id, CustodyStatus.UNKNOWN, error=str(e.last_exception), attempts=attempts)
        except SettlementNetworkError as e:
            self._logger.error(
                f"Custody {action.value} failed",
                error_code=ErrorCode.CUSTODY_FAILED,
                token_id=token_id,
                loan_id=loan_id,
                error=str(e),
            )
            return CustodyOutcome(action, token_id, CustodyStatus.FAILED, error=str(e), attempts=attempts)
        finally:
            self._record_metrics(policy)

        if result.ok:
            self._logger.info(
                f"Custody {action.value} applied",
                token_id=token_id,
                loan_id=loan_id,
                tx_ref=result.tx_ref,
            )
            return CustodyOutcome(action, token_id, CustodyStatus.APPLIED, tx_ref=result.tx_ref, attempts=attempts)

        if already_applied(result):
            if timed_out:
                self._logger.warning(
                    f"Custody {action.value} found already applied; an earlier attempt succeeded remotely",
                    error_code=ErrorCode.CUSTODY_PREVIOUSLY_APPLIED,
                    token_id=token_id,
                    loan_id=loan_id,
                )
            else:
                self._logger.info(
                    f"Custody {action.value} already in place",
                    token_id=token_id,
                    loan_id=loan_id,
                )
            return CustodyOutcome(action, token_id, CustodyStatus.ALREADY_APPLIED, attempts=attempts)

        self._logger.error(
            f"Custody {action.value} rejected by the network",
            error_code=ErrorCode.CUSTODY_FAILED,
            token_id=token_id,
            loan_id=loan_id,
            network_error=result.error_code,
            detail=result.detail,
        )
        return CustodyOutcome(
            action, token_id, CustodyStatus.FAILED, error=result.error_code or result.detail, attempts=attempts,
        )
