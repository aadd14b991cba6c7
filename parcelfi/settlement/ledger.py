"""
Lifecycle Ledger Publisher

Mirrors committed lifecycle events to an append-only public ledger topic.

    commit ──► publish(event) ──► background task
                                      │
                                      ├─ envelope: event + digest + source + version
                                      ├─ schema check (lifecycle-event.schema.json)
                                      ├─ Ed25519 proof (when a signing key is set)
                                      └─ submit_message(topic, canonical JSON)
                                               │
                                   MIRRORED(seq) or FAILED(error) in the store

Publishing happens after the local commit and never blocks or fails the
engine operation that produced the event. A failed mirror leaves the event
in the store as FAILED; `republish_pending` retries every event that has
not been mirrored yet.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Set

from parcelfi import __version__
from parcelfi.core import canonical_json_bytes, now_iso8601
from parcelfi.integrations.ledger_topic import LedgerTopicClient
from parcelfi.proofs import SigningKey, add_proof
from parcelfi.schema import LIFECYCLE_EVENT_SCHEMA, validate_against_schema
from parcelfi.settlement.config import LedgerConfig
from parcelfi.settlement.models import LifecycleEvent, MirrorStatus
from parcelfi.settlement.observability import ErrorCode, LendingLayer, get_logger
from parcelfi.settlement.store import LendingStore, MirrorRecord


class LedgerPublisher:
    """
    Fire-and-forget publisher of lifecycle events.

    Example:
        publisher = LedgerPublisher(topic_client, store, signing_key=key)
        publisher.publish(event)      # returns immediately
        await publisher.drain()       # wait for in-flight mirrors (tests, shutdown)
    """

    def __init__(
        self,
        client: Optional[LedgerTopicClient],
        store: LendingStore,
        config: Optional[LedgerConfig] = None,
        signing_key: Optional[SigningKey] = None,
    ):
        self._client = client
        self._store = store
        self._config = config or LedgerConfig()
        self._signing_key = signing_key
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger("publisher", LendingLayer.LEDGER)

    @property
    def enabled(self) -> bool:
        return self._client is not None and self._config.enabled.get()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def envelope(self, event: LifecycleEvent) -> Dict[str, Any]:
        """The signed message body published for `event`."""
        envelope = event.to_dict()
        envelope["source"] = self._config.source.get()
        envelope["version"] = __version__
        envelope["published_at"] = now_iso8601()
        if self._signing_key is not None and self._config.sign_events.get():
            add_proof(envelope, self._signing_key)
        return envelope

    def publish(self, event: LifecycleEvent) -> Optional[asyncio.Task]:
        """Schedule `event` for mirroring and return without waiting."""
        if not self.enabled:
            self._store.set_mirror_status(event.event_id, MirrorStatus.DISABLED)
            return None
        task = asyncio.get_running_loop().create_task(self.publish_now(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def publish_now(self, event: LifecycleEvent) -> MirrorRecord:
        """Mirror `event` and record the outcome. Never raises."""
        if not self.enabled:
            self._store.set_mirror_status(event.event_id, MirrorStatus.DISABLED)
            return self._store.mirror_record(event.event_id)

        topic_id = self._config.topic_id.get()
        try:
            envelope = self.envelope(event)
            errors = validate_against_schema(envelope, LIFECYCLE_EVENT_SCHEMA)
            if errors:
                raise ValueError("envelope failed schema validation: " + "; ".join(errors))
            sequence_number = await asyncio.wait_for(
                self._client.submit_message(topic_id, canonical_json_bytes(envelope)),
                timeout=self._config.publish_timeout_seconds.get(),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            self._store.set_mirror_status(event.event_id, MirrorStatus.FAILED, error=error)
            self._logger.warning(
                "Lifecycle event not mirrored",
                error_code=ErrorCode.LEDGER_MIRROR_FAILED,
                event_id=event.event_id,
                event_type=event.event_type.value,
                loan_id=event.loan_id,
                topic_id=topic_id,
                error=error,
            )
            return self._store.mirror_record(event.event_id)

        self._store.set_mirror_status(
            event.event_id, MirrorStatus.MIRRORED, sequence_number=sequence_number,
        )
        self._logger.info(
            "Lifecycle event mirrored",
            event_id=event.event_id,
            event_type=event.event_type.value,
            loan_id=event.loan_id,
            topic_id=topic_id,
            sequence_number=sequence_number,
        )
        return self._store.mirror_record(event.event_id)

    async def drain(self) -> None:
        """Wait for every scheduled mirror to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def republish_pending(self) -> int:
        """Retry every event still pending or failed; returns how many were mirrored."""
        if not self.enabled:
            return 0
        mirrored = 0
        for event in self._store.unmirrored_events():
            record = await self.publish_now(event)
            if record is not None and record.status == MirrorStatus.MIRRORED:
                mirrored += 1
        return mirrored
