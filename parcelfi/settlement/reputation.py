"""
Reputation Adjuster

Translates committed lifecycle transitions into per-account reputation
changes. Adjustments are staged into the same unit of work as the loan
transition that earns them, so a reputation change exists if and only if
its transition committed.

    loan_funded            lender   verified +1, score +5
    loan_repaid            borrower completed +1, verified +1, score +10
                           lender   completed +1, verified +1, score +5
    collateral_liquidated  borrower defaulted +1, score -20, tier HIGH

Score deltas come from ReputationConfig. The platform account that funds
express loans carries no reputation.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import List, Optional

from parcelfi.settlement.config import ReputationConfig
from parcelfi.settlement.models import (
    PLATFORM_ACCOUNT_ID,
    Account,
    AccountReputation,
    LifecycleEventType,
    Loan,
    RiskTier,
)
from parcelfi.settlement.observability import LendingLayer, get_logger
from parcelfi.settlement.store import LendingStore, UnitOfWork


class PartyRole(Enum):
    BORROWER = "borrower"
    LENDER = "lender"


def adjust_reputation(
    event_type: LifecycleEventType,
    role: PartyRole,
    current: AccountReputation,
    deltas: Optional[ReputationConfig] = None,
) -> AccountReputation:
    """Reputation of a party after `event_type`. Events that do not concern the role return `current`."""
    d = deltas or ReputationConfig()

    if event_type == LifecycleEventType.LOAN_FUNDED and role == PartyRole.LENDER:
        return replace(
            current,
            verified_transactions=current.verified_transactions + 1,
            score=current.score + d.funded_lender_delta.get(),
        )

    if event_type == LifecycleEventType.LOAN_REPAID:
        delta = (
            d.repaid_borrower_delta.get() if role == PartyRole.BORROWER
            else d.repaid_lender_delta.get()
        )
        return replace(
            current,
            completed_loans=current.completed_loans + 1,
            verified_transactions=current.verified_transactions + 1,
            score=current.score + delta,
        )

    if event_type == LifecycleEventType.COLLATERAL_LIQUIDATED and role == PartyRole.BORROWER:
        return replace(
            current,
            defaulted_loans=current.defaulted_loans + 1,
            score=current.score + d.liquidated_borrower_delta.get(),
            risk_tier=RiskTier.HIGH,
        )

    return current


class ReputationAdjuster:
    """Stages reputation changes for the parties of a loan transition."""

    def __init__(self, store: LendingStore, config: Optional[ReputationConfig] = None):
        self._store = store
        self._config = config or ReputationConfig()
        self._logger = get_logger("adjuster", LendingLayer.REPUTATION)

    def stage(self, uow: UnitOfWork, event_type: LifecycleEventType, loan: Loan) -> List[Account]:
        """Stage the adjustments `event_type` earns into `uow`; returns the staged accounts."""
        staged = []
        for role, account_id in ((PartyRole.BORROWER, loan.borrower_id), (PartyRole.LENDER, loan.lender_id)):
            if account_id is None or account_id == PLATFORM_ACCOUNT_ID:
                continue
            account = self._store.get_account(account_id)
            if account is None:
                self._logger.warning(
                    "No account to adjust reputation for",
                    account_id=account_id,
                    loan_id=loan.loan_id,
                    event_type=event_type.value,
                )
                continue
            reputation = adjust_reputation(event_type, role, account.reputation, self._config)
            if reputation == account.reputation:
                continue
            staged.append(uow.update_account(replace(account, reputation=reputation), expected=account))
            self._logger.debug(
                "Reputation adjusted",
                account_id=account_id,
                role=role.value,
                loan_id=loan.loan_id,
                event_type=event_type.value,
                score=reputation.score,
            )
        return staged
