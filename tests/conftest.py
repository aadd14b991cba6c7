import os
import pathlib
import sys
from decimal import Decimal

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import parcelfi`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: tests that wait on real retry delays (skipped unless PARCELFI_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('PARCELFI_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set PARCELFI_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _reset_config_manager():
    from parcelfi.settlement.config import get_config_manager

    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture
def make_world():
    """Build an engine over a seeded store and mock network."""
    from parcelfi.integrations.ledger_topic import InMemoryLedgerTopic
    from parcelfi.integrations.mock_network import MockSettlementNetwork
    from parcelfi.settlement.engine import SettlementEngine
    from parcelfi.settlement.models import Account, Asset
    from parcelfi.settlement.store import LendingStore
    from support import (
        ASSET_ID, BORROWER, BORROWER_ACCOUNT, LENDER, LENDER_ACCOUNT, TOKEN_ID,
        FakeClock, World, fast_config,
    )

    def build(store=None, network=None, config=None, ledger: bool = True, signing_key=None) -> "World":
        store = store if store is not None else LendingStore()
        network = network if network is not None else MockSettlementNetwork()
        config = config or fast_config()
        topic = InMemoryLedgerTopic()
        clock = FakeClock()

        store.add_account(Account(BORROWER, settlement_account=BORROWER_ACCOUNT))
        store.add_account(Account(LENDER, settlement_account=LENDER_ACCOUNT))
        store.add_asset(Asset(ASSET_ID, BORROWER, Decimal("100000"), custody_token_id=TOKEN_ID))
        network.mint_token(TOKEN_ID, owner=BORROWER_ACCOUNT)
        network.fund_account(BORROWER_ACCOUNT, Decimal("100000"))
        network.fund_account(LENDER_ACCOUNT, Decimal("100000"))

        engine = SettlementEngine(
            store,
            network,
            ledger_client=topic if ledger else None,
            config=config,
            clock=clock,
            signing_key=signing_key,
        )
        return World(store, network, topic, clock, config, engine)

    return build


@pytest.fixture
def world(make_world):
    return make_world()
