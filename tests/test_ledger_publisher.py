import asyncio
import json
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from parcelfi.core import canonical_json_bytes, sha256_bytes
from parcelfi.integrations.ledger_topic import InMemoryLedgerTopic
from parcelfi.proofs import SigningKey, verify_proof
from parcelfi.settlement.config import LedgerConfig
from parcelfi.settlement.ledger import LedgerPublisher
from parcelfi.settlement.models import (
    LifecycleEvent,
    LifecycleEventType,
    Loan,
    MirrorStatus,
)
from parcelfi.settlement.observability import ErrorCode
from parcelfi.settlement.store import LendingStore
from support import ASSET_ID, BORROWER, LENDER, LENDER_ACCOUNT, TOKEN_ID, p2p_terms

TOPIC = "0.0.lifecycle"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _committed_event(store, event_type=LifecycleEventType.LOAN_FUNDED, **metadata):
    loan = Loan("loan-1", BORROWER, ASSET_ID, p2p_terms(), created_at=T0)
    metadata = metadata or {"lender_id": LENDER, "principal": Decimal("10000")}
    event = LifecycleEvent.create(event_type, loan, T0, **metadata)
    with store.transaction() as uow:
        uow.append_event(event)
    return event


@pytest.fixture
def store():
    return LendingStore()


@pytest.fixture
def topic():
    return InMemoryLedgerTopic()


def test_mirrored_event_carries_digest_and_proof(store, topic):
    key = SigningKey.generate()
    publisher = LedgerPublisher(topic, store, signing_key=key)
    event = _committed_event(store, due_date=T0, tx_ref="0.0.2002@abc")

    record = asyncio.run(publisher.publish_now(event))

    assert record.status == MirrorStatus.MIRRORED
    assert record.sequence_number == 1
    (message,) = topic.messages(TOPIC)
    payload = json.loads(message.payload)
    assert payload["event_type"] == "loan_funded"
    assert payload["metadata"]["due_date"] == "2026-03-01T12:00:00.000Z"
    assert payload["source"] == "parcelfi-settlement"
    body = {k: payload[k] for k in ("event_id", "event_type", "loan_id", "asset_id", "occurred_at", "metadata")}
    assert payload["digest"] == sha256_bytes(canonical_json_bytes(body))
    assert verify_proof(payload) == (True, "")
    assert payload["proof"]["verificationMethod"] == key.verification_method


def test_payload_is_canonical_json(store, topic):
    publisher = LedgerPublisher(topic, store)
    event = _committed_event(store)
    asyncio.run(publisher.publish_now(event))
    (message,) = topic.messages(TOPIC)
    assert message.payload == canonical_json_bytes(json.loads(message.payload))
    assert "proof" not in json.loads(message.payload)


def test_tampered_payload_fails_verification(store, topic):
    publisher = LedgerPublisher(topic, store, signing_key=SigningKey.generate())
    asyncio.run(publisher.publish_now(_committed_event(store)))
    payload = json.loads(topic.messages(TOPIC)[0].payload)
    payload["metadata"]["principal"] = "1"
    ok, error = verify_proof(payload)
    assert not ok
    assert error


def test_sequence_numbers_follow_publication_order(store, topic):
    publisher = LedgerPublisher(topic, store)
    first = _committed_event(store, LifecycleEventType.LOAN_OPENED)
    second = _committed_event(store, LifecycleEventType.LOAN_FUNDED)
    asyncio.run(publisher.publish_now(first))
    asyncio.run(publisher.publish_now(second))
    assert store.mirror_record(first.event_id).sequence_number == 1
    assert store.mirror_record(second.event_id).sequence_number == 2


def test_failed_mirror_is_recorded_and_retried(store, topic, caplog):
    publisher = LedgerPublisher(topic, store)
    event = _committed_event(store)
    topic.fail_next()

    record = asyncio.run(publisher.publish_now(event))

    assert record.status == MirrorStatus.FAILED
    assert "topic unavailable" in record.error
    assert store.unmirrored_events() == [event]
    failures = [r for r in caplog.records if getattr(r, "error_code", "") == ErrorCode.LEDGER_MIRROR_FAILED]
    assert len(failures) == 1
    assert failures[0].levelname == "WARNING"

    assert asyncio.run(publisher.republish_pending()) == 1
    record = store.mirror_record(event.event_id)
    assert record.status == MirrorStatus.MIRRORED
    assert record.attempts == 2
    assert store.unmirrored_events() == []


def test_publish_timeout_is_a_failed_mirror(store):
    config = LedgerConfig()
    config.publish_timeout_seconds.set(0.05)
    publisher = LedgerPublisher(InMemoryLedgerTopic(latency_seconds=1.0), store, config)
    record = asyncio.run(publisher.publish_now(_committed_event(store)))
    assert record.status == MirrorStatus.FAILED


def test_disabled_publisher_marks_events(store, topic):
    config = LedgerConfig()
    config.enabled.set(False)
    publisher = LedgerPublisher(topic, store, config)
    event = _committed_event(store)

    async def go():
        return publisher.publish(event)

    assert asyncio.run(go()) is None
    assert store.mirror_record(event.event_id).status == MirrorStatus.DISABLED
    assert topic.messages(TOPIC) == []


def test_publisher_without_client_is_disabled(store):
    publisher = LedgerPublisher(None, store)
    assert not publisher.enabled
    event = _committed_event(store)
    assert asyncio.run(publisher.publish_now(event)).status == MirrorStatus.DISABLED


def test_publish_does_not_wait_for_the_ledger(store):
    publisher = LedgerPublisher(InMemoryLedgerTopic(latency_seconds=0.3), store)
    event = _committed_event(store)

    async def go():
        start = time.monotonic()
        task = publisher.publish(event)
        elapsed = time.monotonic() - start
        assert publisher.in_flight == 1
        await publisher.drain()
        return task, elapsed

    task, elapsed = asyncio.run(go())
    assert elapsed < 0.1
    assert task.done()
    assert store.mirror_record(event.event_id).status == MirrorStatus.MIRRORED
    assert publisher.in_flight == 0


def test_engine_operation_returns_before_mirror_completes(make_world):
    world = make_world()
    world.topic.latency_seconds = 0.3

    async def go():
        start = time.monotonic()
        loan = await world.engine.open_loan(BORROWER, ASSET_ID, p2p_terms())
        elapsed = time.monotonic() - start
        pending = world.store.mirror_record(world.store.events_for_loan(loan.loan_id)[0].event_id).status
        await world.engine.drain()
        return loan, elapsed, pending

    loan, elapsed, pending = asyncio.run(go())
    assert elapsed < 0.2
    assert pending == MirrorStatus.PENDING
    (event,) = world.store.events_for_loan(loan.loan_id)
    assert world.store.mirror_record(event.event_id).status == MirrorStatus.MIRRORED


def test_ledger_outage_does_not_fail_engine_operations(make_world):
    world = make_world()
    world.topic.fail_next(count=10)

    async def go():
        loan = await world.engine.open_loan(BORROWER, ASSET_ID, p2p_terms())
        funded = await world.engine.fund_loan(loan.loan_id, lender_id=LENDER)
        await world.engine.drain()
        return funded

    funded = asyncio.run(go())
    assert world.network.token_locked_by(TOKEN_ID) is not None
    statuses = [world.store.mirror_record(e.event_id).status for e in world.store.events_for_loan(funded.loan_id)]
    assert statuses == [MirrorStatus.FAILED, MirrorStatus.FAILED]
    assert world.network.balance_of(LENDER_ACCOUNT) == Decimal("90000")
