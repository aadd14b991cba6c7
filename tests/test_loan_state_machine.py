from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from parcelfi.settlement.config import LoanPolicyConfig
from parcelfi.settlement.errors import RejectedError, StaleStateError
from parcelfi.settlement.loans import (
    VALID_TRANSITIONS,
    LoanStateMachine,
    compute_interest,
    elapsed_whole_months,
)
from parcelfi.settlement.models import (
    PLATFORM_ACCOUNT_ID,
    Account,
    Asset,
    AssetStatus,
    LoanKind,
    LoanStatus,
)
from parcelfi.settlement.store import LendingStore
from support import ASSET_ID, BORROWER, LENDER, TOKEN_ID, FakeClock, p2p_terms

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store = LendingStore()
    store.add_account(Account(BORROWER, settlement_account="0.0.1001"))
    store.add_account(Account(LENDER, settlement_account="0.0.2002"))
    store.add_asset(Asset(ASSET_ID, BORROWER, Decimal("100000"), custody_token_id=TOKEN_ID))
    return store


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def machine(store, clock):
    return LoanStateMachine(store, LoanPolicyConfig(), clock)


def _open(machine, store, terms=None, asset_id=ASSET_ID):
    with store.transaction() as uow:
        return machine.open(uow, BORROWER, store.require_asset(asset_id), terms or p2p_terms())


def _fund(machine, store, loan):
    with store.transaction() as uow:
        return machine.fund(uow, loan, LENDER)


# =============================================================================
# Transition table
# =============================================================================

def test_transition_table():
    assert VALID_TRANSITIONS[LoanStatus.OPEN] == {LoanStatus.ACTIVE, LoanStatus.CANCELLED}
    assert VALID_TRANSITIONS[LoanStatus.ACTIVE] == {LoanStatus.REPAID, LoanStatus.LIQUIDATED}
    for status in LoanStatus:
        if status.is_terminal():
            assert VALID_TRANSITIONS[status] == set()


@pytest.mark.parametrize("source", list(LoanStatus))
@pytest.mark.parametrize("target", list(LoanStatus))
def test_can_transition_matches_table(source, target):
    assert LoanStateMachine.can_transition(source, target) == (target in VALID_TRANSITIONS[source])


def test_defaulted_is_terminal_without_engine_transitions():
    assert LoanStatus.DEFAULTED.is_terminal()
    assert not any(LoanStatus.DEFAULTED in targets for targets in VALID_TRANSITIONS.values())


# =============================================================================
# Interest
# =============================================================================

@pytest.mark.parametrize("days,months", [(0, 1), (29, 1), (45, 1), (60, 2), (89, 2), (90, 3), (365, 12)])
def test_elapsed_whole_months_floors_with_minimum_of_one(days, months):
    assert elapsed_whole_months(T0, T0 + timedelta(days=days)) == months


def test_elapsed_months_before_funding_is_one():
    assert elapsed_whole_months(T0, T0 - timedelta(days=3)) == 1


def test_interest_for_one_month():
    assert compute_interest(Decimal("10000"), 850, 1) == Decimal("70.83")


def test_interest_rounds_half_up_to_cents():
    # 1000 * 0.0125 / 12 = 1.0416..
    assert compute_interest(Decimal("1000"), 125, 1) == Decimal("1.04")
    # 1500 * 0.01 / 12 = 1.25 exactly
    assert compute_interest(Decimal("1500"), 100, 1) == Decimal("1.25")


def test_quote_after_45_days(machine, store, clock):
    loan = _fund(machine, store, _open(machine, store))
    quote = machine.quote(loan, T0 + timedelta(days=45))
    assert quote.months_elapsed == 1
    assert quote.interest == Decimal("70.83")
    assert quote.total == Decimal("10070.83")


def test_quote_requires_funding(machine, store):
    loan = _open(machine, store)
    with pytest.raises(RejectedError, match="not been funded"):
        machine.quote(loan)


# =============================================================================
# Open
# =============================================================================

class TestOpen:

    def test_open_stages_loan_and_collateral(self, machine, store):
        loan = _open(machine, store)
        assert store.get_loan(loan.loan_id).status == LoanStatus.OPEN
        assert store.get_asset(ASSET_ID).status == AssetStatus.COLLATERALIZED
        assert loan.created_at == T0

    def test_draft_asset_can_be_pledged(self, machine, store):
        asset = store.require_asset(ASSET_ID)
        store.add_asset(replace(asset, status=AssetStatus.DRAFT))
        assert _open(machine, store).status == LoanStatus.OPEN

    def test_sold_asset_is_rejected(self, machine, store):
        asset = store.require_asset(ASSET_ID)
        store.add_asset(replace(asset, status=AssetStatus.SOLD))
        with pytest.raises(RejectedError) as exc_info:
            _open(machine, store)
        assert exc_info.value.http_status == 409

    def test_asset_without_custody_token_is_rejected(self, machine, store):
        store.add_asset(Asset("parcel-9", BORROWER, Decimal("100000")))
        with pytest.raises(RejectedError, match="custody token"):
            _open(machine, store, asset_id="parcel-9")

    def test_rejected_open_stages_nothing(self, machine, store):
        with pytest.raises(RejectedError):
            _open(machine, store, p2p_terms(rate_bps=100))
        assert store.list_loans() == []
        assert store.get_asset(ASSET_ID).status == AssetStatus.LISTED

    @pytest.mark.parametrize("overrides,message", [
        ({"principal": Decimal("500")}, "at least"),
        ({"principal": Decimal("150000")}, "cannot exceed"),
        ({"rate_bps": 400}, "rate must be between"),
        ({"rate_bps": 5001}, "rate must be between"),
        ({"duration_months": 61}, "duration must be between"),
        ({"collateral_ratio_bps": 2000}, "collateral ratio"),
        ({"collateral_ratio_bps": 9000}, "collateral ratio"),
    ])
    def test_policy_bounds(self, machine, store, overrides, message):
        with pytest.raises(RejectedError, match=message):
            machine.check_terms(p2p_terms(**overrides), store.require_asset(ASSET_ID))

    def test_express_terms_come_from_policy(self, machine):
        terms = machine.express_terms(Decimal("20000"))
        assert terms.kind == LoanKind.EXPRESS
        assert (terms.rate_bps, terms.duration_months, terms.collateral_ratio_bps) == (600, 12, 7000)

    def test_express_principal_cap(self, machine, store):
        with pytest.raises(RejectedError, match="express principal"):
            machine.check_terms(machine.express_terms(Decimal("60000")), store.require_asset(ASSET_ID))

    def test_express_ltv_cap(self, machine, store):
        small = Asset("parcel-small", BORROWER, Decimal("60000"), custody_token_id="token-small")
        # 50000 / 60000 = 8333 bps
        with pytest.raises(RejectedError, match="express cap"):
            machine.check_terms(machine.express_terms(Decimal("50000")), small)

    def test_express_terms_cannot_be_altered(self, machine, store):
        terms = replace(machine.express_terms(Decimal("20000")), rate_bps=500)
        with pytest.raises(RejectedError, match="fixed rate"):
            machine.check_terms(terms, store.require_asset(ASSET_ID))


# =============================================================================
# Fund / repay / liquidate / cancel
# =============================================================================

class TestTransitions:

    def test_fund_sets_due_date_in_thirty_day_months(self, machine, store):
        funded = _fund(machine, store, _open(machine, store))
        assert funded.status == LoanStatus.ACTIVE
        assert funded.lender_id == LENDER
        assert funded.funded_at == T0
        assert funded.due_date == T0 + timedelta(days=360)

    def test_fund_from_stale_read_fails_at_commit(self, machine, store):
        loan = _open(machine, store)
        store.claim_loan(loan.loan_id, LoanStatus.OPEN, "fund")
        with pytest.raises(StaleStateError):
            _fund(machine, store, loan)
        assert store.get_loan(loan.loan_id).status == LoanStatus.OPEN

    def test_fund_clears_pending_operation(self, machine, store):
        loan = _open(machine, store)
        claimed = store.claim_loan(loan.loan_id, LoanStatus.OPEN, "fund")
        funded = _fund(machine, store, claimed)
        assert funded.pending_operation is None
        assert store.get_loan(loan.loan_id).version == claimed.version + 1

    def test_illegal_transition_is_stale(self, machine, store):
        loan = _open(machine, store)
        with pytest.raises(StaleStateError):
            with store.transaction() as uow:
                machine.repay(uow, loan, BORROWER, None)

    def test_resolve_lender(self, machine, store):
        p2p = _open(machine, store)
        assert machine.resolve_lender(p2p, LENDER) == LENDER
        with pytest.raises(RejectedError, match="lender is required"):
            machine.resolve_lender(p2p, None)

        express = replace(p2p, terms=machine.express_terms(Decimal("20000")))
        assert machine.resolve_lender(express, None) == PLATFORM_ACCOUNT_ID
        assert machine.resolve_lender(express, PLATFORM_ACCOUNT_ID) == PLATFORM_ACCOUNT_ID

    def test_repay_lists_asset_again(self, machine, store, clock):
        loan = _fund(machine, store, _open(machine, store))
        clock.advance(days=61)
        with store.transaction() as uow:
            repaid, quote = machine.repay(uow, loan, BORROWER)
        assert repaid.status == LoanStatus.REPAID
        assert repaid.closed_at == clock.now
        assert quote.months_elapsed == 2
        assert store.get_asset(ASSET_ID).status == AssetStatus.LISTED

    def test_liquidation_window(self, machine, store):
        loan = _fund(machine, store, _open(machine, store))
        due = loan.due_date
        assert machine.liquidation_opens_at(loan) == due
        with pytest.raises(RejectedError, match="not overdue"):
            machine.check_liquidate(loan, LENDER, due)
        machine.check_liquidate(loan, LENDER, due + timedelta(milliseconds=1))

    def test_grace_period_delays_liquidation(self, machine, store):
        loan = _fund(machine, store, _open(machine, store, p2p_terms(grace_period_days=15)))
        assert machine.liquidation_opens_at(loan) == loan.due_date + timedelta(days=15)
        with pytest.raises(RejectedError):
            machine.check_liquidate(loan, LENDER, loan.due_date + timedelta(days=15))

    def test_liquidate_moves_asset_to_lender(self, machine, store, clock):
        loan = _fund(machine, store, _open(machine, store))
        clock.advance(days=400)
        with store.transaction() as uow:
            liquidated = machine.liquidate(uow, loan, LENDER)
        assert liquidated.status == LoanStatus.LIQUIDATED
        asset = store.get_asset(ASSET_ID)
        assert asset.owner_id == LENDER
        assert asset.status == AssetStatus.LISTED

    def test_cancel_only_by_borrower(self, machine, store):
        loan = _open(machine, store)
        with pytest.raises(RejectedError) as exc_info:
            machine.check_cancel(loan, LENDER)
        assert exc_info.value.http_status == 403

        with store.transaction() as uow:
            cancelled = machine.cancel(uow, loan, BORROWER)
        assert cancelled.status == LoanStatus.CANCELLED
        assert store.get_asset(ASSET_ID).status == AssetStatus.LISTED

    def test_cancel_rejects_claimed_loan(self, machine, store):
        loan = _open(machine, store)
        claimed = store.claim_loan(loan.loan_id, LoanStatus.OPEN, "fund")
        with pytest.raises(StaleStateError, match="fund in progress"):
            machine.check_cancel(claimed, BORROWER)

    def test_terminal_loans_cannot_move(self, machine, store):
        loan = _open(machine, store)
        with store.transaction() as uow:
            cancelled = machine.cancel(uow, loan, BORROWER)
        with pytest.raises(StaleStateError):
            with store.transaction() as uow:
                machine.fund(uow, cancelled, LENDER)
