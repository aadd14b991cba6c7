"""External network integrations.

The settlement engine never talks to a network directly. It is handed a
client object satisfying one of the protocols here:

    settlement_network.py   transfers, receipts, transfer records, balances,
                            and custody-token escrow primitives
    ledger_topic.py         append-only public topic for lifecycle events
    mock_network.py         deterministic in-memory settlement network with
                            fault injection, used by tests and the demo CLI
"""
