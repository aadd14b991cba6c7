"""
PARCELFI Settlement: Loan & Collateral Settlement Engine

Coordinates every balance-affecting step of a parcel-backed loan across
the local store, the settlement network and the public ledger.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         SETTLEMENT ENGINE                                │
    │                                                                          │
    │  ORCHESTRATION                                                           │
    │    engine.py          open, fund, repay, claim collateral, cancel       │
    │    reconciliation.py  incidents, stuck claims, unmirrored events        │
    │                                                                          │
    │  COMPONENTS                                                              │
    │    loans.py           Loan state machine, interest and due dates        │
    │    custody.py         Custody token lock / release / transfer           │
    │    verifier.py        Transfer confirmation and amount checks           │
    │    reputation.py      Per-account reputation adjustments                │
    │    ledger.py          Fire-and-forget lifecycle event mirroring         │
    │                                                                          │
    │  FOUNDATION                                                              │
    │    models.py          Loans, assets, accounts, events                   │
    │    store.py           Guarded units of work, claims, attempt log        │
    │    errors.py          Error taxonomy and caller responses               │
    │    config.py          Configuration with YAML and env binding           │
    │    observability.py   Structured logging with correlation ids          │
    │    resilience.py      Retry with backoff                                │
    │    cli.py             Operator CLI                                      │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Store as source of truth: every external call is logged as an attempt
    before it is issued, and every transition is a guarded unit of work.

    Compensate, never guess: a failed step undoes the custody lock it took.
    An external effect whose local write failed becomes an incident for an
    operator; it is never retried blindly.

    Pending is not failed: a transfer that is not final within the wait
    bound is reported as pending with its reference, so the caller retries.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from parcelfi import __version__


def __getattr__(name):
    """Lazy import settlement modules on first access."""

    # Engine exports
    if name in ("SettlementEngine", "RepaymentResult"):
        from parcelfi.settlement import engine
        return getattr(engine, name)

    # Component exports
    if name in ("LoanStateMachine", "VALID_TRANSITIONS", "compute_interest",
                "elapsed_whole_months"):
        from parcelfi.settlement import loans
        return getattr(loans, name)

    if name in ("CustodyCoordinator", "CustodyOutcome", "CustodyStatus", "CustodyAction"):
        from parcelfi.settlement import custody
        return getattr(custody, name)

    if name in ("SettlementVerifier", "within_tolerance"):
        from parcelfi.settlement import verifier
        return getattr(verifier, name)

    if name in ("ReputationAdjuster", "PartyRole", "adjust_reputation"):
        from parcelfi.settlement import reputation
        return getattr(reputation, name)

    if name in ("LedgerPublisher",):
        from parcelfi.settlement import ledger
        return getattr(ledger, name)

    if name in ("Reconciler",):
        from parcelfi.settlement import reconciliation
        return getattr(reconciliation, name)

    # Foundation exports
    if name in ("LendingStore", "UnitOfWork", "Incident", "IncidentStatus", "AttemptRecord"):
        from parcelfi.settlement import store
        return getattr(store, name)

    if name in ("Asset", "AssetStatus", "Account", "AccountReputation", "Loan", "LoanKind",
                "LoanStatus", "LoanTerms", "LifecycleEvent", "LifecycleEventType",
                "MirrorStatus", "RepaymentQuote", "RiskTier", "SettlementRecord",
                "VerificationOutcome", "PLATFORM_ACCOUNT_ID"):
        from parcelfi.settlement import models
        return getattr(models, name)

    if name in ("LendingError", "RejectedError", "NotFoundError", "CustodyFailedError",
                "SettlementFailedError", "MismatchedAmountError", "PendingError",
                "StaleStateError", "StoreWriteError", "ExternalSuccessLocalInconsistency"):
        from parcelfi.settlement import errors
        return getattr(errors, name)

    if name in ("LendingConfig", "ConfigManager", "get_config", "get_config_manager"):
        from parcelfi.settlement import config
        return getattr(config, name)

    raise AttributeError(f"module 'parcelfi.settlement' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Engine
    "SettlementEngine", "RepaymentResult",
    # Components
    "LoanStateMachine", "VALID_TRANSITIONS", "compute_interest", "elapsed_whole_months",
    "CustodyCoordinator", "CustodyOutcome", "CustodyStatus", "CustodyAction",
    "SettlementVerifier", "within_tolerance",
    "ReputationAdjuster", "PartyRole", "adjust_reputation",
    "LedgerPublisher", "Reconciler",
    # Foundation
    "LendingStore", "UnitOfWork", "Incident", "IncidentStatus", "AttemptRecord",
    "Asset", "AssetStatus", "Account", "AccountReputation", "Loan", "LoanKind",
    "LoanStatus", "LoanTerms", "LifecycleEvent", "LifecycleEventType",
    "MirrorStatus", "RepaymentQuote", "RiskTier", "SettlementRecord",
    "VerificationOutcome", "PLATFORM_ACCOUNT_ID",
    "LendingError", "RejectedError", "NotFoundError", "CustodyFailedError",
    "SettlementFailedError", "MismatchedAmountError", "PendingError",
    "StaleStateError", "StoreWriteError", "ExternalSuccessLocalInconsistency",
    "LendingConfig", "ConfigManager", "get_config", "get_config_manager",
]
