import asyncio

import pytest

from parcelfi.integrations.mock_network import MockSettlementNetwork
from parcelfi.integrations.settlement_network import CustodyErrorCode
from parcelfi.settlement.config import CustodyConfig
from parcelfi.settlement.custody import CustodyAction, CustodyCoordinator, CustodyStatus
from parcelfi.settlement.observability import ErrorCode
from parcelfi.settlement.store import LendingStore

TOKEN = "token-7"
OWNER = "0.0.1001"
LENDER = "0.0.2002"


@pytest.fixture
def network():
    network = MockSettlementNetwork()
    network.mint_token(TOKEN, owner=OWNER)
    return network


@pytest.fixture
def store():
    return LendingStore()


@pytest.fixture
def coordinator(network, store):
    config = CustodyConfig()
    config.base_delay_seconds.set(0.0)
    return CustodyCoordinator(network, store, config)


def test_lock_and_release(coordinator, network):
    locked = asyncio.run(coordinator.lock(TOKEN, OWNER, loan_id="loan-1"))
    assert locked.status == CustodyStatus.APPLIED
    assert locked.action == CustodyAction.LOCK
    assert locked.tx_ref
    assert network.token_locked_by(TOKEN) == OWNER

    released = asyncio.run(coordinator.release(TOKEN, loan_id="loan-1"))
    assert released.status == CustodyStatus.APPLIED
    assert network.token_locked_by(TOKEN) is None


def test_release_of_unlocked_token_is_a_no_op(coordinator, network):
    outcome = asyncio.run(coordinator.release(TOKEN))
    assert outcome.ok
    assert outcome.previously_applied
    assert network.token_owner(TOKEN) == OWNER
    assert network.token_locked_by(TOKEN) is None


def test_lock_by_same_owner_is_already_applied(coordinator, network):
    asyncio.run(coordinator.lock(TOKEN, OWNER))
    again = asyncio.run(coordinator.lock(TOKEN, OWNER))
    assert again.status == CustodyStatus.ALREADY_APPLIED


def test_lock_held_by_other_party_fails(coordinator, network):
    network.mint_token("token-8", owner=LENDER)
    asyncio.run(coordinator.lock("token-8", LENDER))
    outcome = asyncio.run(coordinator.lock("token-8", OWNER))
    assert outcome.status == CustodyStatus.FAILED
    assert outcome.error == CustodyErrorCode.ALREADY_LOCKED


def test_timed_out_lock_that_landed_is_not_applied_twice(coordinator, network, caplog):
    network.inject_custody_fault("lock", timeouts=1, apply_on_timeout=True)

    outcome = asyncio.run(coordinator.lock(TOKEN, OWNER))

    assert outcome.status == CustodyStatus.ALREADY_APPLIED
    assert outcome.attempts == 2
    assert network.token_locked_by(TOKEN) == OWNER
    codes = [getattr(r, "error_code", "") for r in caplog.records]
    assert ErrorCode.CUSTODY_PREVIOUSLY_APPLIED in codes


def test_timed_out_lock_that_did_not_land_is_retried(coordinator, network):
    network.inject_custody_fault("lock", timeouts=2)
    outcome = asyncio.run(coordinator.lock(TOKEN, OWNER))
    assert outcome.status == CustodyStatus.APPLIED
    assert outcome.attempts == 3


def test_exhausted_timeouts_are_unknown(coordinator, network):
    network.inject_custody_fault("lock", timeouts=3)
    outcome = asyncio.run(coordinator.lock(TOKEN, OWNER))
    assert outcome.status == CustodyStatus.UNKNOWN
    assert not outcome.ok
    assert outcome.attempts == 3
    assert network.call_count("lock_custody") == 3


def test_rejection_is_not_retried(coordinator, network):
    network.inject_custody_fault("lock", error_code=CustodyErrorCode.NOT_AUTHORIZED)
    outcome = asyncio.run(coordinator.lock(TOKEN, OWNER))
    assert outcome.status == CustodyStatus.FAILED
    assert outcome.error == CustodyErrorCode.NOT_AUTHORIZED
    assert network.call_count("lock_custody") == 1


def test_transfer_moves_ownership(coordinator, network):
    asyncio.run(coordinator.lock(TOKEN, OWNER))
    outcome = asyncio.run(coordinator.transfer_ownership(TOKEN, LENDER))
    assert outcome.status == CustodyStatus.APPLIED
    assert network.token_owner(TOKEN) == LENDER
    assert network.token_locked_by(TOKEN) is None


def test_timed_out_transfer_that_landed(coordinator, network):
    asyncio.run(coordinator.lock(TOKEN, OWNER))
    network.inject_custody_fault("transfer", timeouts=1, apply_on_timeout=True)
    outcome = asyncio.run(coordinator.transfer_ownership(TOKEN, LENDER))
    assert outcome.status == CustodyStatus.ALREADY_APPLIED
    assert network.token_owner(TOKEN) == LENDER


def test_transfer_of_unlocked_token_fails(coordinator, network):
    outcome = asyncio.run(coordinator.transfer_ownership(TOKEN, LENDER))
    assert outcome.status == CustodyStatus.FAILED
    assert network.token_owner(TOKEN) == OWNER


def test_every_call_is_logged_before_it_is_issued(coordinator, network, store):
    network.inject_custody_fault("lock", timeouts=1)
    asyncio.run(coordinator.lock(TOKEN, OWNER, loan_id="loan-1"))

    attempts = store.attempts(loan_id="loan-1", operation="custody_lock")
    assert [a.details["attempt"] for a in attempts] == [1, 2]
    assert [a.outcome for a in attempts] == ["error", "ok"]
    assert all(a.target == TOKEN for a in attempts)
    assert attempts[0].details["owner"] == OWNER


def test_retry_metrics_accumulate_across_calls(coordinator, network):
    network.inject_custody_fault("lock", timeouts=1)
    asyncio.run(coordinator.lock(TOKEN, OWNER))

    metrics = coordinator.retry_metrics
    assert metrics.total_attempts == 2
    assert metrics.failed_attempts == 1
    assert metrics.successful_attempts == 1

    asyncio.run(coordinator.release(TOKEN))
    assert coordinator.retry_metrics.total_attempts == 3
    assert coordinator.retry_metrics.to_dict()["successful_attempts"] == 2
    # Callers get a snapshot, not the live counters
    metrics.total_attempts = 100
    assert coordinator.retry_metrics.total_attempts == 3


def test_exhausted_retries_are_counted(coordinator, network):
    network.inject_custody_fault("lock", timeouts=3)
    asyncio.run(coordinator.lock(TOKEN, OWNER))
    metrics = coordinator.retry_metrics
    assert metrics.retries_exhausted == 1
    assert metrics.failed_attempts == 3
