"""Shared test doubles and seed data for the settlement engine tests."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from parcelfi.integrations.ledger_topic import InMemoryLedgerTopic
from parcelfi.integrations.mock_network import MockSettlementNetwork
from parcelfi.settlement.config import LendingConfig
from parcelfi.settlement.engine import SettlementEngine
from parcelfi.settlement.errors import StoreWriteError
from parcelfi.settlement.models import LoanTerms
from parcelfi.settlement.store import LendingStore

BORROWER = "alice"
LENDER = "bob"
BORROWER_ACCOUNT = "0.0.1001"
LENDER_ACCOUNT = "0.0.2002"
ASSET_ID = "parcel-7"
TOKEN_ID = "token-7"


class FakeClock:
    """Settable clock injected into the engine."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyStore(LendingStore):
    """Store whose unit-of-work writes can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_event_writes = False

    def _write(self, loans, assets, accounts, events, payments=None) -> None:
        if self.fail_event_writes and events:
            raise StoreWriteError("simulated store outage")
        super()._write(loans=loans, assets=assets, accounts=accounts, events=events, payments=payments)


@dataclass
class World:
    store: LendingStore
    network: MockSettlementNetwork
    topic: InMemoryLedgerTopic
    clock: FakeClock
    config: LendingConfig
    engine: SettlementEngine


def fast_config() -> LendingConfig:
    config = LendingConfig()
    config.settlement.max_retries.set(5)
    config.settlement.retry_delay_seconds.set(0.001)
    config.settlement.hard_timeout_seconds.set(5.0)
    config.custody.base_delay_seconds.set(0.0)
    return config


def p2p_terms(**overrides) -> LoanTerms:
    values = dict(
        principal=Decimal("10000"),
        rate_bps=850,
        duration_months=12,
        collateral_ratio_bps=5000,
    )
    values.update(overrides)
    return LoanTerms(**values)
