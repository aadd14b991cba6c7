from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from parcelfi.settlement.config import ReputationConfig
from parcelfi.settlement.models import (
    PLATFORM_ACCOUNT_ID,
    Account,
    AccountReputation,
    LifecycleEventType,
    Loan,
    LoanStatus,
    RiskTier,
)
from parcelfi.settlement.reputation import PartyRole, ReputationAdjuster, adjust_reputation
from parcelfi.settlement.store import LendingStore
from support import ASSET_ID, BORROWER, LENDER, p2p_terms

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
START = AccountReputation()


def test_funding_credits_the_lender():
    after = adjust_reputation(LifecycleEventType.LOAN_FUNDED, PartyRole.LENDER, START)
    assert after.verified_transactions == 1
    assert after.score == 5
    assert after.completed_loans == 0


def test_funding_leaves_the_borrower_unchanged():
    assert adjust_reputation(LifecycleEventType.LOAN_FUNDED, PartyRole.BORROWER, START) == START


def test_repayment_credits_both_parties():
    borrower = adjust_reputation(LifecycleEventType.LOAN_REPAID, PartyRole.BORROWER, START)
    lender = adjust_reputation(LifecycleEventType.LOAN_REPAID, PartyRole.LENDER, START)
    assert (borrower.completed_loans, borrower.verified_transactions, borrower.score) == (1, 1, 10)
    assert (lender.completed_loans, lender.verified_transactions, lender.score) == (1, 1, 5)


def test_liquidation_marks_borrower_high_risk():
    current = replace(START, score=35, risk_tier=RiskTier.LOW)
    after = adjust_reputation(LifecycleEventType.COLLATERAL_LIQUIDATED, PartyRole.BORROWER, current)
    assert after.defaulted_loans == 1
    assert after.score == 15
    assert after.risk_tier == RiskTier.HIGH
    assert adjust_reputation(LifecycleEventType.COLLATERAL_LIQUIDATED, PartyRole.LENDER, current) == current


@pytest.mark.parametrize("event_type", [LifecycleEventType.LOAN_OPENED, LifecycleEventType.LOAN_CANCELLED])
def test_events_without_reputation_effect(event_type):
    for role in PartyRole:
        assert adjust_reputation(event_type, role, START) == START


def test_deltas_are_configurable():
    deltas = ReputationConfig()
    deltas.repaid_borrower_delta.set(25)
    after = adjust_reputation(LifecycleEventType.LOAN_REPAID, PartyRole.BORROWER, START, deltas)
    assert after.score == 25


def _loan(lender_id):
    return Loan(
        "loan-1", BORROWER, ASSET_ID, p2p_terms(), created_at=T0,
        status=LoanStatus.REPAID, lender_id=lender_id,
    )


def test_adjuster_stages_both_parties():
    store = LendingStore()
    store.add_account(Account(BORROWER))
    store.add_account(Account(LENDER))
    adjuster = ReputationAdjuster(store)

    with store.transaction() as uow:
        staged = adjuster.stage(uow, LifecycleEventType.LOAN_REPAID, _loan(LENDER))

    assert {a.account_id for a in staged} == {BORROWER, LENDER}
    assert store.get_account(BORROWER).reputation.score == 10
    assert store.get_account(LENDER).reputation.score == 5
    assert store.get_account(BORROWER).version == 1


def test_adjuster_skips_platform_and_missing_accounts(caplog):
    store = LendingStore()
    adjuster = ReputationAdjuster(store)

    with store.transaction() as uow:
        staged = adjuster.stage(uow, LifecycleEventType.LOAN_REPAID, _loan(PLATFORM_ACCOUNT_ID))

    assert staged == []
    assert store.get_account(PLATFORM_ACCOUNT_ID) is None
    # The borrower has no account row here; only that is warned about
    warnings = [r for r in caplog.records if r.levelname == "WARNING"]
    assert len(warnings) == 1
    assert warnings[0].context["account_id"] == BORROWER


def test_adjustment_is_dropped_with_its_transition():
    store = LendingStore()
    store.add_account(Account(BORROWER))
    store.add_account(Account(LENDER))
    adjuster = ReputationAdjuster(store)

    with pytest.raises(RuntimeError):
        with store.transaction() as uow:
            adjuster.stage(uow, LifecycleEventType.LOAN_REPAID, _loan(LENDER))
            raise RuntimeError("transition failed")

    assert store.get_account(BORROWER).reputation == START
