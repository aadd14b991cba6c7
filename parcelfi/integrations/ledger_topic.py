"""Append-only public ledger topic.

Lifecycle events are mirrored as opaque message payloads to a topic on a
public ledger. The publisher only needs `submit_message`; the returned
sequence number is stored locally as the mirror reference.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol


class LedgerTopicError(Exception):
    """The topic rejected or failed to accept a message."""
    pass


class LedgerTopicClient(Protocol):
    async def submit_message(self, topic_id: str, payload: bytes) -> int:
        """Append a message and return its sequence number on the topic."""
        ...


@dataclass(frozen=True)
class TopicMessage:
    topic_id: str
    sequence_number: int
    payload: bytes


class InMemoryLedgerTopic:
    """
    In-memory topic used by tests and the demo CLI.

    Failures and latency can be injected per call.
    """

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self._messages: Dict[str, List[TopicMessage]] = {}
        self._lock = threading.Lock()
        self._fail_next = 0
        self._failure: Optional[Exception] = None

    def fail_next(self, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `count` submissions raise."""
        self._fail_next = count
        self._failure = error or LedgerTopicError("topic unavailable")

    async def submit_message(self, topic_id: str, payload: bytes) -> int:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        with self._lock:
            if self._fail_next > 0:
                self._fail_next -= 1
                raise self._failure or LedgerTopicError("topic unavailable")
            messages = self._messages.setdefault(topic_id, [])
            seq = len(messages) + 1
            messages.append(TopicMessage(topic_id, seq, payload))
            return seq

    def messages(self, topic_id: str) -> List[TopicMessage]:
        with self._lock:
            return list(self._messages.get(topic_id, []))
