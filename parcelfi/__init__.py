"""
PARCELFI: Parcel Collateral Lending Stack

Loans secured by tokenized land parcels. A borrower pledges a parcel
(held as a non-fungible custody token on an external settlement network),
a lender funds the loan, and the loan is later repaid or the collateral is
claimed. Every balance-affecting step is confirmed against the settlement
network and mirrored to an append-only public ledger.

Package Index
─────────────

    core.py             Hashing, canonical JSON, YAML/JSON loading, timestamps
    schema.py           JSON Schema registry and validators
    proofs.py           Ed25519 proofs for mirrored ledger envelopes
    integrations/       Settlement network and ledger topic clients
    settlement/         Loan & Collateral Settlement Engine

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"
