"""
Settlement engine domain model.

Rows held by the store are frozen dataclasses; a state change is always a
new instance built with `dataclasses.replace` and written through a store
unit of work. Money is Decimal; rates and loan-to-value caps are integer
basis points.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from parcelfi.core import canonical_json_bytes, jsonable, sha256_bytes, to_decimal, to_iso8601

BPS_DENOMINATOR = 10000

# Lender id recorded on express loans, which the platform funds itself
PLATFORM_ACCOUNT_ID = "PLATFORM"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


# =============================================================================
# ASSETS
# =============================================================================

class AssetStatus(Enum):
    DRAFT = "draft"
    LISTED = "listed"
    COLLATERALIZED = "collateralized"
    SOLD = "sold"


@dataclass(frozen=True)
class Asset:
    """A land parcel, represented on the network by a custody token."""
    asset_id: str
    owner_id: str
    value: Decimal
    status: AssetStatus = AssetStatus.LISTED
    custody_token_id: Optional[str] = None
    version: int = 0
    # Set while a sale holds the asset between external calls
    pending_operation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "owner_id": self.owner_id,
            "value": str(self.value),
            "status": self.status.value,
            "custody_token_id": self.custody_token_id,
            "version": self.version,
            "pending_operation": self.pending_operation,
        }


# =============================================================================
# LOANS
# =============================================================================

class LoanKind(Enum):
    P2P = "p2p"
    EXPRESS = "express"


class LoanStatus(Enum):
    """
    Loan lifecycle states.

    DEFAULTED is recorded by external servicing; no engine transition
    enters or leaves it.
    """
    OPEN = "open"
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    LIQUIDATED = "liquidated"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in {
            LoanStatus.REPAID,
            LoanStatus.DEFAULTED,
            LoanStatus.LIQUIDATED,
            LoanStatus.CANCELLED,
        }


@dataclass(frozen=True)
class LoanTerms:
    principal: Decimal
    rate_bps: int
    duration_months: int
    collateral_ratio_bps: int
    kind: LoanKind = LoanKind.P2P
    grace_period_days: int = 0
    description: str = ""

    @property
    def is_express(self) -> bool:
        return self.kind == LoanKind.EXPRESS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoanTerms":
        """Build terms from caller input; shape is checked by the loan-terms schema first."""
        from parcelfi.schema import LOAN_TERMS_SCHEMA, validate_against_schema

        errors = validate_against_schema(data, LOAN_TERMS_SCHEMA)
        if errors:
            raise ValueError("; ".join(errors))
        return cls(
            principal=to_decimal(data["principal"]),
            rate_bps=int(data["rate_bps"]),
            duration_months=int(data["duration_months"]),
            collateral_ratio_bps=int(data["collateral_ratio_bps"]),
            kind=LoanKind(data.get("kind", LoanKind.P2P.value)),
            grace_period_days=int(data.get("grace_period_days", 0)),
            description=str(data.get("description", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": str(self.principal),
            "rate_bps": self.rate_bps,
            "duration_months": self.duration_months,
            "collateral_ratio_bps": self.collateral_ratio_bps,
            "kind": self.kind.value,
            "grace_period_days": self.grace_period_days,
            "description": self.description,
        }


@dataclass(frozen=True)
class Loan:
    loan_id: str
    borrower_id: str
    asset_id: str
    terms: LoanTerms
    created_at: datetime
    status: LoanStatus = LoanStatus.OPEN
    lender_id: Optional[str] = None
    funded_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    version: int = 0
    # Set while an engine operation holds the loan between external calls
    pending_operation: Optional[str] = None

    @property
    def principal(self) -> Decimal:
        return self.terms.principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "borrower_id": self.borrower_id,
            "asset_id": self.asset_id,
            "terms": self.terms.to_dict(),
            "status": self.status.value,
            "lender_id": self.lender_id,
            "created_at": to_iso8601(self.created_at),
            "funded_at": to_iso8601(self.funded_at) if self.funded_at else None,
            "due_date": to_iso8601(self.due_date) if self.due_date else None,
            "closed_at": to_iso8601(self.closed_at) if self.closed_at else None,
            "version": self.version,
            "pending_operation": self.pending_operation,
        }


@dataclass(frozen=True)
class RepaymentQuote:
    principal: Decimal
    interest: Decimal
    total: Decimal
    months_elapsed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": str(self.principal),
            "interest": str(self.interest),
            "total": str(self.total),
            "months_elapsed": self.months_elapsed,
        }


# =============================================================================
# ACCOUNTS & REPUTATION
# =============================================================================

class RiskTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class AccountReputation:
    completed_loans: int = 0
    defaulted_loans: int = 0
    verified_transactions: int = 0
    score: int = 0
    risk_tier: RiskTier = RiskTier.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed_loans": self.completed_loans,
            "defaulted_loans": self.defaulted_loans,
            "verified_transactions": self.verified_transactions,
            "score": self.score,
            "risk_tier": self.risk_tier.value,
        }


@dataclass(frozen=True)
class Account:
    account_id: str
    settlement_account: Optional[str] = None
    reputation: AccountReputation = field(default_factory=AccountReputation)
    version: int = 0


# =============================================================================
# SETTLEMENT RECORDS
# =============================================================================

class VerificationOutcome(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    MISMATCHED = "mismatched"
    FAILED = "failed"


@dataclass
class SettlementRecord:
    """Outcome of confirming one transfer against the network."""
    tx_ref: str
    expected_amount: Decimal
    payer: Optional[str]
    payee: Optional[str]
    created_at: datetime
    outcome: VerificationOutcome = VerificationOutcome.PENDING
    retry_count: int = 0
    confirmed_at: Optional[datetime] = None
    actual_amount: Optional[Decimal] = None
    unverified_amount: bool = False
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_ref": self.tx_ref,
            "expected_amount": str(self.expected_amount),
            "actual_amount": None if self.actual_amount is None else str(self.actual_amount),
            "payer": self.payer,
            "payee": self.payee,
            "outcome": self.outcome.value,
            "retry_count": self.retry_count,
            "unverified_amount": self.unverified_amount,
            "created_at": to_iso8601(self.created_at),
            "confirmed_at": to_iso8601(self.confirmed_at) if self.confirmed_at else None,
            "detail": self.detail,
        }


# =============================================================================
# LIFECYCLE EVENTS
# =============================================================================

class LifecycleEventType(Enum):
    LOAN_OPENED = "loan_opened"
    LOAN_FUNDED = "loan_funded"
    LOAN_REPAID = "loan_repaid"
    COLLATERAL_LIQUIDATED = "collateral_liquidated"
    LOAN_CANCELLED = "loan_cancelled"
    ASSET_PURCHASED = "asset_purchased"


class MirrorStatus(Enum):
    PENDING = "pending"
    MIRRORED = "mirrored"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(frozen=True)
class LifecycleEvent:
    """Immutable record of a committed loan transition or asset sale."""
    event_id: str
    event_type: LifecycleEventType
    loan_id: Optional[str]
    asset_id: str
    occurred_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: LifecycleEventType,
        loan: Loan,
        occurred_at: datetime,
        **metadata: Any,
    ) -> "LifecycleEvent":
        return cls(
            event_id=new_id("evt"),
            event_type=event_type,
            loan_id=loan.loan_id,
            asset_id=loan.asset_id,
            occurred_at=occurred_at,
            metadata=metadata,
        )

    @classmethod
    def for_asset(
        cls,
        event_type: LifecycleEventType,
        asset: Asset,
        occurred_at: datetime,
        **metadata: Any,
    ) -> "LifecycleEvent":
        """Event for an asset change outside any loan (a sale)."""
        return cls(
            event_id=new_id("evt"),
            event_type=event_type,
            loan_id=None,
            asset_id=asset.asset_id,
            occurred_at=occurred_at,
            metadata=metadata,
        )

    def body(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "loan_id": self.loan_id,
            "asset_id": self.asset_id,
            "occurred_at": to_iso8601(self.occurred_at),
            "metadata": jsonable(self.metadata),
        }

    @property
    def digest(self) -> str:
        return sha256_bytes(canonical_json_bytes(self.body()))

    def to_dict(self) -> Dict[str, Any]:
        d = self.body()
        d["digest"] = self.digest
        return d


def ltv_bps(principal: Decimal, asset_value: Decimal) -> Decimal:
    """Loan-to-value in basis points."""
    if asset_value <= 0:
        raise ValueError("asset value must be positive")
    return principal * BPS_DENOMINATOR / asset_value
