"""
Settlement engine error taxonomy.

Every error an engine operation can raise derives from `LendingError` and
knows how it is presented to a caller (`to_response`). Operator-only detail
(external transaction references, custody token ids, incident ids) stays
in logs and incident records; the caller-facing response for an
inconsistency carries none of it.

    LendingError
    ├── RejectedError                       precondition failed, nothing happened
    │   ├── CustodyFailedError              custody step failed, no transition
    │   ├── SettlementFailedError           terminal failure receipt
    │   └── MismatchedAmountError           transfer moved the wrong amount
    ├── PendingError                        confirmation not terminal yet
    ├── StaleStateError                     lost a race or illegal transition
    ├── StoreWriteError                     local persistence failed
    └── ExternalSuccessLocalInconsistency   external committed, local did not

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for settlement engine errors."""

    code = "LENDING_ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        """Caller-facing representation."""
        return {
            "status": self.http_status,
            "error": self.code,
            "message": self.message,
        }


class RejectedError(LendingError):
    """A precondition failed; no external side effect was left behind."""

    code = "REJECTED"
    http_status = 400

    def __init__(self, reason: str, http_status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        if http_status is not None:
            self.http_status = http_status


class NotFoundError(RejectedError):
    code = "NOT_FOUND"
    http_status = 404


class CustodyFailedError(RejectedError):
    """A custody step failed so the transition was not committed.

    `tx_ref` is set when a payment was already confirmed for this operation;
    the caller may retry with it as the payment reference.
    """

    code = "CUSTODY_FAILED"
    http_status = 409

    def __init__(self, reason: str, token_id: str, tx_ref: Optional[str] = None):
        super().__init__(reason)
        self.token_id = token_id
        self.tx_ref = tx_ref

    def to_response(self) -> Dict[str, Any]:
        response = super().to_response()
        if self.tx_ref:
            response["payment_ref"] = self.tx_ref
        return response


class SettlementFailedError(RejectedError):
    """The network reported the transfer as failed."""

    code = "SETTLEMENT_FAILED"

    def __init__(self, reason: str, tx_ref: str):
        super().__init__(reason)
        self.tx_ref = tx_ref


class MismatchedAmountError(RejectedError):
    """The transfer confirmed but did not move the expected amount."""

    code = "AMOUNT_MISMATCH"

    def __init__(
        self,
        tx_ref: str,
        expected: Decimal,
        actual: Optional[Decimal],
        reason: str = "",
    ):
        super().__init__(
            reason or f"transfer {tx_ref} moved {actual} but {expected} was expected"
        )
        self.tx_ref = tx_ref
        self.expected = expected
        self.actual = actual

    def to_response(self) -> Dict[str, Any]:
        response = super().to_response()
        response["expected"] = str(self.expected)
        response["actual"] = None if self.actual is None else str(self.actual)
        return response


class PendingError(LendingError):
    """The external confirmation is not terminal yet; retry later."""

    code = "PENDING"
    http_status = 202

    def __init__(self, message: str, tx_ref: str, retry_after_seconds: int):
        super().__init__(message)
        self.tx_ref = tx_ref
        self.retry_after_seconds = retry_after_seconds

    def to_response(self) -> Dict[str, Any]:
        response = super().to_response()
        response["payment_ref"] = self.tx_ref
        response["retry_after"] = self.retry_after_seconds
        return response


class StaleStateError(LendingError):
    """The loan was not in the expected state or version; re-fetch and retry."""

    code = "STALE_STATE"
    http_status = 409

    def __init__(
        self,
        loan_id: str,
        expected: str,
        actual: str,
        message: str = "",
    ):
        super().__init__(
            message or f"loan {loan_id} is {actual}, expected {expected}"
        )
        self.loan_id = loan_id
        self.expected = expected
        self.actual = actual


class StoreWriteError(LendingError):
    """The local store failed to persist a unit of work."""

    code = "STORE_WRITE_FAILED"


class ExternalSuccessLocalInconsistency(LendingError):
    """
    An external effect committed but the local write did not.

    Raised after the incident has been recorded. Callers see a generic
    failure; operators reconcile using the incident.
    """

    code = "INTERNAL_INCONSISTENCY"
    http_status = 500

    def __init__(
        self,
        operation: str,
        loan_id: Optional[str],
        tx_ref: Optional[str],
        custody_token_id: Optional[str],
        incident_id: Optional[str],
        cause: Optional[BaseException] = None,
        asset_id: Optional[str] = None,
    ):
        subject = f"loan {loan_id}" if loan_id else f"asset {asset_id}"
        super().__init__(
            f"{operation} for {subject} committed externally but not locally"
        )
        self.operation = operation
        self.loan_id = loan_id
        self.asset_id = asset_id
        self.tx_ref = tx_ref
        self.custody_token_id = custody_token_id
        self.incident_id = incident_id
        self.cause = cause

    def to_response(self) -> Dict[str, Any]:
        return {
            "status": self.http_status,
            "error": self.code,
            "message": "The operation could not be completed. Please contact support.",
        }
