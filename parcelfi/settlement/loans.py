"""
Loan State Machine

Owns every change to a loan's status, lender, funding time and due date,
and the asset status changes that go with them. A listed asset with no
loan against it can also be sold (LISTED -> SOLD, owner becomes buyer).

    ┌──────┐  fund   ┌────────┐  repay      ┌────────┐
    │ OPEN │────────►│ ACTIVE │────────────►│ REPAID │
    └──┬───┘         └───┬────┘             └────────┘
       │ cancel          │ liquidate (claimant is lender, now > due + grace)
       ▼                 ▼
    ┌───────────┐    ┌────────────┐
    │ CANCELLED │    │ LIQUIDATED │
    └───────────┘    └────────────┘

Transitions are staged into a store unit of work and guarded by the loan's
status and version, so a transition computed from a stale read fails with
StaleStateError at commit and has no effect. The `check_*` methods
validate preconditions without staging anything; the engine calls them
before any external side effect.

Interest is simple interest on whole elapsed months, floored and never
less than one:

    interest = principal * rate_bps / 10000 * months / 12   (half-up to cents)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Set, Tuple

from parcelfi.core import quantize_money, utc_now
from parcelfi.settlement.config import LoanPolicyConfig
from parcelfi.settlement.errors import RejectedError, StaleStateError
from parcelfi.settlement.models import (
    BPS_DENOMINATOR,
    PLATFORM_ACCOUNT_ID,
    Account,
    Asset,
    AssetStatus,
    Loan,
    LoanKind,
    LoanStatus,
    LoanTerms,
    RepaymentQuote,
    ltv_bps,
    new_id,
)
from parcelfi.settlement.observability import LendingLayer, get_logger
from parcelfi.settlement.store import LendingStore, UnitOfWork

VALID_TRANSITIONS: Dict[LoanStatus, Set[LoanStatus]] = {
    LoanStatus.OPEN: {LoanStatus.ACTIVE, LoanStatus.CANCELLED},
    LoanStatus.ACTIVE: {LoanStatus.REPAID, LoanStatus.LIQUIDATED},
    LoanStatus.REPAID: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.LIQUIDATED: set(),
    LoanStatus.CANCELLED: set(),
}


def elapsed_whole_months(start: datetime, end: datetime, days_per_month: int = 30) -> int:
    """Whole months between two instants, floored, never less than one."""
    months = (end - start) // timedelta(days=days_per_month)
    return max(1, months)


def compute_interest(principal: Decimal, rate_bps: int, months: int) -> Decimal:
    return quantize_money(principal * Decimal(rate_bps) / BPS_DENOMINATOR * months / 12)


class LoanStateMachine:
    """Validates and stages loan transitions."""

    def __init__(
        self,
        store: LendingStore,
        policy: Optional[LoanPolicyConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._policy = policy or LoanPolicyConfig()
        self._clock = clock
        self._logger = get_logger("state_machine", LendingLayer.LOANS)

    @staticmethod
    def can_transition(source: LoanStatus, target: LoanStatus) -> bool:
        return target in VALID_TRANSITIONS[source]

    def _stage(self, uow: UnitOfWork, loan: Loan, target: LoanStatus, **changes) -> Loan:
        if not self.can_transition(loan.status, target):
            sources = sorted(s.value for s, targets in VALID_TRANSITIONS.items() if target in targets)
            raise StaleStateError(loan.loan_id, "|".join(sources), loan.status.value)
        new = replace(loan, status=target, pending_operation=None, **changes)
        staged = uow.update_loan(new, expected=loan)
        self._logger.info(
            f"Loan {loan.status.value} -> {target.value}",
            loan_id=loan.loan_id,
            version=staged.version,
        )
        return staged

    @staticmethod
    def _require_status(loan: Loan, expected: LoanStatus) -> None:
        if loan.status != expected:
            raise StaleStateError(loan.loan_id, expected.value, loan.status.value)

    # -------------------------------------------------------------------------
    # Open
    # -------------------------------------------------------------------------

    def express_terms(self, principal: Decimal, description: str = "") -> LoanTerms:
        """Terms of a platform-funded express loan for `principal`."""
        return LoanTerms(
            principal=principal,
            rate_bps=self._policy.express_rate_bps.get(),
            duration_months=self._policy.express_duration_months.get(),
            collateral_ratio_bps=self._policy.express_max_ltv_bps.get(),
            kind=LoanKind.EXPRESS,
            description=description,
        )

    def check_terms(self, terms: LoanTerms, asset: Asset) -> None:
        p = self._policy
        if terms.principal < p.min_principal.get():
            raise RejectedError(f"principal must be at least {p.min_principal.get()}")
        ltv = ltv_bps(terms.principal, asset.value)

        if terms.is_express:
            if terms.principal > p.express_max_principal.get():
                raise RejectedError(f"express principal cannot exceed {p.express_max_principal.get()}")
            if terms.rate_bps != p.express_rate_bps.get():
                raise RejectedError(f"express loans carry a fixed rate of {p.express_rate_bps.get()} bps")
            if terms.duration_months != p.express_duration_months.get():
                raise RejectedError(
                    f"express loans run for {p.express_duration_months.get()} months"
                )
            if ltv > p.express_max_ltv_bps.get():
                raise RejectedError(
                    f"loan-to-value {ltv:.0f} bps exceeds express cap {p.express_max_ltv_bps.get()} bps"
                )
            return

        if terms.principal > p.max_principal.get():
            raise RejectedError(f"principal cannot exceed {p.max_principal.get()}")
        if not p.min_rate_bps.get() <= terms.rate_bps <= p.max_rate_bps.get():
            raise RejectedError(
                f"rate must be between {p.min_rate_bps.get()} and {p.max_rate_bps.get()} bps"
            )
        if not p.min_duration_months.get() <= terms.duration_months <= p.max_duration_months.get():
            raise RejectedError(
                f"duration must be between {p.min_duration_months.get()} and "
                f"{p.max_duration_months.get()} months"
            )
        if not p.min_ltv_bps.get() <= terms.collateral_ratio_bps <= p.max_ltv_bps.get():
            raise RejectedError(
                f"collateral ratio must be between {p.min_ltv_bps.get()} and {p.max_ltv_bps.get()} bps"
            )
        if ltv > terms.collateral_ratio_bps:
            raise RejectedError(
                f"loan-to-value {ltv:.0f} bps exceeds the requested cap of {terms.collateral_ratio_bps} bps"
            )

    def check_open(self, borrower_id: str, asset: Asset, terms: LoanTerms) -> None:
        if asset.owner_id != borrower_id:
            raise RejectedError("asset is not owned by the borrower", http_status=403)
        if asset.custody_token_id is None:
            raise RejectedError("asset has no custody token")
        if asset.status not in (AssetStatus.LISTED, AssetStatus.DRAFT):
            raise RejectedError(f"asset is {asset.status.value} and cannot be pledged", http_status=409)
        if asset.pending_operation is not None:
            raise StaleStateError(
                asset.asset_id,
                asset.status.value,
                f"{asset.status.value} ({asset.pending_operation} in progress)",
                message=f"asset {asset.asset_id} has a {asset.pending_operation} in progress",
            )
        self.check_terms(terms, asset)

    def open(self, uow: UnitOfWork, borrower_id: str, asset: Asset, terms: LoanTerms) -> Loan:
        """Stage a new OPEN loan and collateralize its asset."""
        self.check_open(borrower_id, asset, terms)
        loan = uow.insert_loan(Loan(
            loan_id=new_id("loan"),
            borrower_id=borrower_id,
            asset_id=asset.asset_id,
            terms=terms,
            created_at=self._clock(),
        ))
        uow.update_asset(replace(asset, status=AssetStatus.COLLATERALIZED), expected=asset)
        self._logger.info(
            "Loan opened",
            loan_id=loan.loan_id,
            asset_id=asset.asset_id,
            kind=terms.kind.value,
            principal=str(terms.principal),
        )
        return loan

    # -------------------------------------------------------------------------
    # Fund
    # -------------------------------------------------------------------------

    def resolve_lender(self, loan: Loan, lender_id: Optional[str]) -> str:
        if loan.terms.is_express:
            if lender_id not in (None, PLATFORM_ACCOUNT_ID):
                raise RejectedError("express loans are funded by the platform")
            return PLATFORM_ACCOUNT_ID
        if not lender_id:
            raise RejectedError("lender is required")
        return lender_id

    def check_fund(
        self,
        loan: Loan,
        lender_id: str,
        borrower: Optional[Account],
        lender: Optional[Account],
    ) -> None:
        self._require_status(loan, LoanStatus.OPEN)
        if lender_id == loan.borrower_id:
            raise RejectedError("borrower cannot fund their own loan")
        if borrower is None or not borrower.settlement_account:
            raise RejectedError("borrower has no settlement account")
        if not loan.terms.is_express and (lender is None or not lender.settlement_account):
            raise RejectedError("lender has no settlement account")

    def fund(self, uow: UnitOfWork, loan: Loan, lender_id: str) -> Loan:
        now = self._clock()
        due_date = now + timedelta(
            days=loan.terms.duration_months * self._policy.days_per_month.get()
        )
        return self._stage(
            uow, loan, LoanStatus.ACTIVE,
            lender_id=lender_id,
            funded_at=now,
            due_date=due_date,
        )

    # -------------------------------------------------------------------------
    # Repay
    # -------------------------------------------------------------------------

    def quote(self, loan: Loan, as_of: Optional[datetime] = None) -> RepaymentQuote:
        if loan.funded_at is None:
            raise RejectedError("loan has not been funded")
        months = elapsed_whole_months(
            loan.funded_at, as_of or self._clock(), self._policy.days_per_month.get()
        )
        interest = compute_interest(loan.principal, loan.terms.rate_bps, months)
        return RepaymentQuote(
            principal=loan.principal,
            interest=interest,
            total=quantize_money(loan.principal + interest),
            months_elapsed=months,
        )

    def check_repay(self, loan: Loan, payer_id: str) -> None:
        self._require_status(loan, LoanStatus.ACTIVE)
        if payer_id != loan.borrower_id:
            raise RejectedError("only the borrower can repay this loan", http_status=403)

    def repay(
        self,
        uow: UnitOfWork,
        loan: Loan,
        payer_id: str,
        quote: Optional[RepaymentQuote] = None,
    ) -> Tuple[Loan, RepaymentQuote]:
        """Stage the repayment; `quote` is the amount already collected, if any."""
        self.check_repay(loan, payer_id)
        now = self._clock()
        quote = quote or self.quote(loan, now)
        repaid = self._stage(uow, loan, LoanStatus.REPAID, closed_at=now)
        asset = self._store.require_asset(loan.asset_id)
        uow.update_asset(replace(asset, status=AssetStatus.LISTED), expected=asset)
        return repaid, quote

    # -------------------------------------------------------------------------
    # Liquidate
    # -------------------------------------------------------------------------

    def liquidation_opens_at(self, loan: Loan) -> datetime:
        """Instant after which the lender may claim the collateral."""
        if loan.due_date is None:
            raise RejectedError("loan has no due date")
        return loan.due_date + timedelta(days=loan.terms.grace_period_days)

    def check_liquidate(self, loan: Loan, claimant_id: str, now: Optional[datetime] = None) -> None:
        self._require_status(loan, LoanStatus.ACTIVE)
        if claimant_id != loan.lender_id:
            raise RejectedError("only the lender can claim the collateral", http_status=403)
        opens_at = self.liquidation_opens_at(loan)
        if not (now or self._clock()) > opens_at:
            raise RejectedError(f"loan is not overdue; collateral claimable after {opens_at.isoformat()}")

    def liquidate(self, uow: UnitOfWork, loan: Loan, claimant_id: str) -> Loan:
        now = self._clock()
        self.check_liquidate(loan, claimant_id, now)
        liquidated = self._stage(uow, loan, LoanStatus.LIQUIDATED, closed_at=now)
        asset = self._store.require_asset(loan.asset_id)
        uow.update_asset(
            replace(asset, owner_id=claimant_id, status=AssetStatus.LISTED),
            expected=asset,
        )
        return liquidated

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def check_cancel(self, loan: Loan, requester_id: str) -> None:
        self._require_status(loan, LoanStatus.OPEN)
        if requester_id != loan.borrower_id:
            raise RejectedError("only the borrower can cancel this loan", http_status=403)
        if loan.pending_operation is not None:
            raise StaleStateError(
                loan.loan_id,
                LoanStatus.OPEN.value,
                f"{loan.status.value} ({loan.pending_operation} in progress)",
            )

    def cancel(self, uow: UnitOfWork, loan: Loan, requester_id: str) -> Loan:
        self.check_cancel(loan, requester_id)
        cancelled = self._stage(uow, loan, LoanStatus.CANCELLED, closed_at=self._clock())
        asset = self._store.require_asset(loan.asset_id)
        uow.update_asset(replace(asset, status=AssetStatus.LISTED), expected=asset)
        return cancelled

    # -------------------------------------------------------------------------
    # Purchase
    # -------------------------------------------------------------------------

    def check_purchase(self, asset: Asset, buyer_id: str) -> None:
        if asset.status != AssetStatus.LISTED:
            raise RejectedError(f"asset is {asset.status.value} and cannot be purchased", http_status=409)
        if asset.custody_token_id is None:
            raise RejectedError("asset has no custody token")
        if buyer_id == PLATFORM_ACCOUNT_ID:
            raise RejectedError("the platform does not purchase assets")
        if buyer_id == asset.owner_id:
            raise RejectedError("owner cannot purchase their own asset")

    def sell(self, uow: UnitOfWork, asset: Asset, buyer_id: str) -> Asset:
        """Stage the ownership change of a claimed, listed asset."""
        if asset.status != AssetStatus.LISTED:
            raise StaleStateError(
                asset.asset_id, AssetStatus.LISTED.value, asset.status.value,
                message=f"asset {asset.asset_id} is {asset.status.value}, expected listed",
            )
        sold = uow.update_asset(
            replace(asset, owner_id=buyer_id, status=AssetStatus.SOLD, pending_operation=None),
            expected=asset,
        )
        self._logger.info(
            "Asset sold",
            asset_id=asset.asset_id,
            seller_id=asset.owner_id,
            buyer_id=buyer_id,
            version=sold.version,
        )
        return sold
