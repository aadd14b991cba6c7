"""
Lending Store

The store is the source of truth for loan, asset and account state and for
which external side effects have been attempted. All state changes go
through a unit of work whose writes are guarded by the expected status and
version of every row they touch (`update ... where id=? and status=? and
version=?`). A unit of work either applies completely or not at all.

Beyond the rows themselves the store keeps:

    claims      pending_operation marker on a loan while an engine operation
                is between its external calls
    attempts    every custody call, transfer submission and verification,
                written before the external call is issued
    incidents   external-success / local-failure cases awaiting an operator
    events      lifecycle events with their ledger mirror status
    payments    confirmed transfer references and the operation each one settled

`LendingStore` is the in-memory reference implementation. A database-backed
store overrides `_write`, the single persistence hook.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from parcelfi.core import to_iso8601, utc_now
from parcelfi.settlement.errors import NotFoundError, RejectedError, StaleStateError
from parcelfi.settlement.models import (
    Account,
    Asset,
    AssetStatus,
    LifecycleEvent,
    Loan,
    LoanStatus,
    MirrorStatus,
    new_id,
)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class AttemptRecord:
    """One external call, logged before it is issued."""
    attempt_id: str
    operation: str
    target: str
    started_at: datetime
    loan_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    outcome: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "operation": self.operation,
            "target": self.target,
            "loan_id": self.loan_id,
            "details": {k: str(v) for k, v in self.details.items()},
            "outcome": self.outcome,
            "error": self.error,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at) if self.completed_at else None,
        }


class IncidentStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass
class Incident:
    """An external effect that committed while the local write did not."""
    incident_id: str
    operation: str
    loan_id: Optional[str]
    created_at: datetime
    asset_id: Optional[str] = None
    tx_ref: Optional[str] = None
    custody_token_id: Optional[str] = None
    detail: str = ""
    status: IncidentStatus = IncidentStatus.OPEN
    resolved_at: Optional[datetime] = None
    resolution: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "operation": self.operation,
            "loan_id": self.loan_id,
            "asset_id": self.asset_id,
            "tx_ref": self.tx_ref,
            "custody_token_id": self.custody_token_id,
            "detail": self.detail,
            "status": self.status.value,
            "created_at": to_iso8601(self.created_at),
            "resolved_at": to_iso8601(self.resolved_at) if self.resolved_at else None,
            "resolution": self.resolution,
        }


@dataclass
class MirrorRecord:
    event_id: str
    status: MirrorStatus = MirrorStatus.PENDING
    sequence_number: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0


# =============================================================================
# UNIT OF WORK
# =============================================================================

class UnitOfWork:
    """
    Staged, guarded writes applied atomically on commit.

    Each update names the row version it was derived from; commit fails with
    StaleStateError if any guarded row moved in the meantime.
    """

    def __init__(self) -> None:
        self.loans: Dict[str, Tuple[Loan, Optional[Loan]]] = {}
        self.assets: Dict[str, Tuple[Asset, Optional[Asset]]] = {}
        self.accounts: Dict[str, Tuple[Account, Optional[Account]]] = {}
        self.events: List[LifecycleEvent] = []
        self.payments: Dict[str, Tuple[str, str]] = {}

    def insert_loan(self, loan: Loan) -> Loan:
        self.loans[loan.loan_id] = (loan, None)
        return loan

    def update_loan(self, new: Loan, expected: Loan) -> Loan:
        """Stage `new`, guarded by `expected`'s status and version."""
        staged = replace(new, version=expected.version + 1)
        self.loans[new.loan_id] = (staged, expected)
        return staged

    def update_asset(self, new: Asset, expected: Asset) -> Asset:
        staged = replace(new, version=expected.version + 1)
        self.assets[new.asset_id] = (staged, expected)
        return staged

    def update_account(self, new: Account, expected: Account) -> Account:
        staged = replace(new, version=expected.version + 1)
        self.accounts[new.account_id] = (staged, expected)
        return staged

    def append_event(self, event: LifecycleEvent) -> LifecycleEvent:
        self.events.append(event)
        return event

    def bind_payment(self, tx_ref: str, subject_id: str, operation: str) -> None:
        """Record that `tx_ref` settled `operation` on `subject_id` (a loan or asset id)."""
        self.payments[tx_ref] = (subject_id, operation)


# =============================================================================
# STORE
# =============================================================================

class LendingStore:
    """
    Thread-safe in-memory lending store.

    Example:
        store = LendingStore()
        with store.transaction() as uow:
            uow.insert_loan(loan)
            uow.update_asset(replace(asset, status=AssetStatus.COLLATERALIZED), asset)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._loans: Dict[str, Loan] = {}
        self._assets: Dict[str, Asset] = {}
        self._accounts: Dict[str, Account] = {}
        self._events: Dict[str, LifecycleEvent] = {}
        self._event_order: List[str] = []
        self._mirrors: Dict[str, MirrorRecord] = {}
        self._attempts: Dict[str, AttemptRecord] = {}
        self._incidents: Dict[str, Incident] = {}
        self._payments: Dict[str, Tuple[str, str]] = {}

    # -------------------------------------------------------------------------
    # Seeding and reads
    # -------------------------------------------------------------------------

    def add_asset(self, asset: Asset) -> Asset:
        with self._lock:
            self._assets[asset.asset_id] = asset
        return asset

    def add_account(self, account: Account) -> Account:
        with self._lock:
            self._accounts[account.account_id] = account
        return account

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            return self._loans.get(loan_id)

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"loan {loan_id} not found")
        return loan

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            return self._assets.get(asset_id)

    def require_asset(self, asset_id: str) -> Asset:
        asset = self.get_asset(asset_id)
        if asset is None:
            raise NotFoundError(f"asset {asset_id} not found")
        return asset

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        with self._lock:
            return [l for l in self._loans.values() if status is None or l.status == status]

    def list_assets(self) -> List[Asset]:
        with self._lock:
            return list(self._assets.values())

    def payment_binding(self, tx_ref: str) -> Optional[Tuple[str, str]]:
        """(subject id, operation) already settled by `tx_ref`, if any."""
        with self._lock:
            return self._payments.get(tx_ref)

    # -------------------------------------------------------------------------
    # Units of work
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """Stage writes in the block; commit them all when it exits cleanly."""
        uow = UnitOfWork()
        yield uow
        self.commit(uow)

    def commit(self, uow: UnitOfWork) -> None:
        with self._lock:
            self._check_guards(uow)
            self._write(
                loans=[new for new, _ in uow.loans.values()],
                assets=[new for new, _ in uow.assets.values()],
                accounts=[new for new, _ in uow.accounts.values()],
                events=list(uow.events),
                payments=dict(uow.payments),
            )

    def _check_guards(self, uow: UnitOfWork) -> None:
        for loan_id, (new, expected) in uow.loans.items():
            current = self._loans.get(loan_id)
            if expected is None:
                if current is not None:
                    raise StaleStateError(loan_id, "absent", current.status.value)
                continue
            if current is None:
                raise NotFoundError(f"loan {loan_id} not found")
            if current.status != expected.status or current.version != expected.version:
                raise StaleStateError(
                    loan_id,
                    f"{expected.status.value}@v{expected.version}",
                    f"{current.status.value}@v{current.version}",
                )
        for asset_id, (new, expected) in uow.assets.items():
            current = self._assets.get(asset_id)
            if current is None:
                raise NotFoundError(f"asset {asset_id} not found")
            if expected is not None and current.version != expected.version:
                raise StaleStateError(
                    asset_id,
                    f"{expected.status.value}@v{expected.version}",
                    f"{current.status.value}@v{current.version}",
                    message=f"asset {asset_id} changed concurrently",
                )
        for account_id, (new, expected) in uow.accounts.items():
            current = self._accounts.get(account_id)
            if expected is not None and current is not None and current.version != expected.version:
                raise StaleStateError(
                    account_id,
                    f"v{expected.version}",
                    f"v{current.version}",
                    message=f"account {account_id} changed concurrently",
                )
        for tx_ref, binding in uow.payments.items():
            bound = self._payments.get(tx_ref)
            if bound is not None and bound != binding:
                raise RejectedError(
                    f"transfer {tx_ref} already settled {bound[1]} for {bound[0]}",
                    http_status=409,
                )

    def _write(
        self,
        loans: List[Loan],
        assets: List[Asset],
        accounts: List[Account],
        events: List[LifecycleEvent],
        payments: Optional[Dict[str, Tuple[str, str]]] = None,
    ) -> None:
        """Persist a checked batch. Called with the store lock held."""
        if payments:
            self._payments.update(payments)
        for loan in loans:
            self._loans[loan.loan_id] = loan
        for asset in assets:
            self._assets[asset.asset_id] = asset
        for account in accounts:
            self._accounts[account.account_id] = account
        for event in events:
            self._events[event.event_id] = event
            self._event_order.append(event.event_id)
            self._mirrors[event.event_id] = MirrorRecord(event.event_id)

    # -------------------------------------------------------------------------
    # Operation claims
    # -------------------------------------------------------------------------

    def claim_loan(self, loan_id: str, expected_status: LoanStatus, operation: str) -> Loan:
        """
        Mark the loan as held by `operation`.

        Fails with StaleStateError when the loan is not in `expected_status`
        or another operation already holds it.
        """
        with self._lock:
            loan = self.require_loan(loan_id)
            if loan.status != expected_status:
                raise StaleStateError(loan_id, expected_status.value, loan.status.value)
            if loan.pending_operation is not None:
                raise StaleStateError(
                    loan_id,
                    expected_status.value,
                    f"{loan.status.value} ({loan.pending_operation} in progress)",
                )
            claimed = replace(loan, pending_operation=operation, version=loan.version + 1)
            self._write(loans=[claimed], assets=[], accounts=[], events=[])
            return claimed

    def release_claim(self, claimed: Loan) -> bool:
        """Drop a claim taken by `claim_loan`, if the loan has not moved since."""
        with self._lock:
            current = self._loans.get(claimed.loan_id)
            if current is None or current.version != claimed.version or current.pending_operation is None:
                return False
            released = replace(current, pending_operation=None, version=current.version + 1)
            self._write(loans=[released], assets=[], accounts=[], events=[])
            return True

    def force_release_claim(self, loan_id: str) -> Optional[Loan]:
        """Operator override used by reconciliation."""
        with self._lock:
            current = self.require_loan(loan_id)
            if current.pending_operation is None:
                return None
            released = replace(current, pending_operation=None, version=current.version + 1)
            self._write(loans=[released], assets=[], accounts=[], events=[])
            return released

    def claim_asset(self, asset_id: str, expected_status: AssetStatus, operation: str) -> Asset:
        """Mark an asset as held by `operation` (a sale in progress)."""
        with self._lock:
            asset = self.require_asset(asset_id)
            if asset.status != expected_status:
                raise StaleStateError(
                    asset_id, expected_status.value, asset.status.value,
                    message=f"asset {asset_id} is {asset.status.value}, expected {expected_status.value}",
                )
            if asset.pending_operation is not None:
                raise StaleStateError(
                    asset_id,
                    expected_status.value,
                    f"{asset.status.value} ({asset.pending_operation} in progress)",
                    message=f"asset {asset_id} has a {asset.pending_operation} in progress",
                )
            claimed = replace(asset, pending_operation=operation, version=asset.version + 1)
            self._write(loans=[], assets=[claimed], accounts=[], events=[])
            return claimed

    def release_asset_claim(self, claimed: Asset) -> bool:
        with self._lock:
            current = self._assets.get(claimed.asset_id)
            if current is None or current.version != claimed.version or current.pending_operation is None:
                return False
            released = replace(current, pending_operation=None, version=current.version + 1)
            self._write(loans=[], assets=[released], accounts=[], events=[])
            return True

    def force_release_asset_claim(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            current = self.require_asset(asset_id)
            if current.pending_operation is None:
                return None
            released = replace(current, pending_operation=None, version=current.version + 1)
            self._write(loans=[], assets=[released], accounts=[], events=[])
            return released

    # -------------------------------------------------------------------------
    # Attempt log
    # -------------------------------------------------------------------------

    def record_attempt(
        self,
        operation: str,
        target: str,
        loan_id: Optional[str] = None,
        **details: Any,
    ) -> str:
        attempt = AttemptRecord(
            attempt_id=new_id("att"),
            operation=operation,
            target=target,
            started_at=utc_now(),
            loan_id=loan_id,
            details=details,
        )
        with self._lock:
            self._attempts[attempt.attempt_id] = attempt
        return attempt.attempt_id

    def complete_attempt(self, attempt_id: str, outcome: str, error: Optional[str] = None) -> None:
        with self._lock:
            attempt = self._attempts[attempt_id]
            attempt.outcome = outcome
            attempt.error = error
            attempt.completed_at = utc_now()

    def attempts(self, loan_id: Optional[str] = None, operation: Optional[str] = None) -> List[AttemptRecord]:
        with self._lock:
            return [
                a for a in self._attempts.values()
                if (loan_id is None or a.loan_id == loan_id)
                and (operation is None or a.operation == operation)
            ]

    # -------------------------------------------------------------------------
    # Incidents
    # -------------------------------------------------------------------------

    def record_incident(
        self,
        operation: str,
        loan_id: Optional[str],
        tx_ref: Optional[str] = None,
        custody_token_id: Optional[str] = None,
        detail: str = "",
        asset_id: Optional[str] = None,
    ) -> Incident:
        incident = Incident(
            incident_id=new_id("inc"),
            operation=operation,
            loan_id=loan_id,
            asset_id=asset_id,
            created_at=utc_now(),
            tx_ref=tx_ref,
            custody_token_id=custody_token_id,
            detail=detail,
        )
        with self._lock:
            self._incidents[incident.incident_id] = incident
        return incident

    def get_incident(self, incident_id: str) -> Incident:
        with self._lock:
            incident = self._incidents.get(incident_id)
        if incident is None:
            raise NotFoundError(f"incident {incident_id} not found")
        return incident

    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]:
        with self._lock:
            return [i for i in self._incidents.values() if status is None or i.status == status]

    def resolve_incident(self, incident_id: str, resolution: str) -> Incident:
        with self._lock:
            incident = self.get_incident(incident_id)
            incident.status = IncidentStatus.RESOLVED
            incident.resolution = resolution
            incident.resolved_at = utc_now()
            return incident

    # -------------------------------------------------------------------------
    # Lifecycle events and mirror status
    # -------------------------------------------------------------------------

    def events_for_loan(self, loan_id: str) -> List[LifecycleEvent]:
        with self._lock:
            return [
                self._events[eid] for eid in self._event_order
                if self._events[eid].loan_id == loan_id
            ]

    def events_for_asset(self, asset_id: str) -> List[LifecycleEvent]:
        with self._lock:
            return [
                self._events[eid] for eid in self._event_order
                if self._events[eid].asset_id == asset_id
            ]

    def get_event(self, event_id: str) -> Optional[LifecycleEvent]:
        with self._lock:
            return self._events.get(event_id)

    def mirror_record(self, event_id: str) -> Optional[MirrorRecord]:
        with self._lock:
            return self._mirrors.get(event_id)

    def set_mirror_status(
        self,
        event_id: str,
        status: MirrorStatus,
        sequence_number: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self._mirrors.setdefault(event_id, MirrorRecord(event_id))
            record.status = status
            record.error = error
            if sequence_number is not None:
                record.sequence_number = sequence_number
            if status in (MirrorStatus.MIRRORED, MirrorStatus.FAILED):
                record.attempts += 1

    def unmirrored_events(self) -> List[LifecycleEvent]:
        """Events whose mirror is still pending or last failed, oldest first."""
        with self._lock:
            return [
                self._events[eid] for eid in self._event_order
                if self._mirrors[eid].status in (MirrorStatus.PENDING, MirrorStatus.FAILED)
            ]
