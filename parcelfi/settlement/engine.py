"""
Settlement Engine

Sequences every loan operation across the store, the custody coordinator,
the settlement verifier, the reputation adjuster and the ledger publisher.
No other component calls both custody and verification for a loan.

Funding, the longest path:

    ┌───────────┐   ┌──────────────┐   ┌───────────────┐   ┌──────────────┐   ┌──────────────┐
    │  VALIDATE │──►│ CLAIM (CAS)  │──►│ BALANCE CHECK │──►│ CUSTODY LOCK │──►│ PAY + VERIFY │
    └───────────┘   └──────┬───────┘   └───────┬───────┘   └──────┬───────┘   └──────┬───────┘
                           │ lost race         │ short            │ failed           │ pending / mismatch /
                           ▼                   ▼                  ▼                  ▼ failed / raised
                     StaleStateError     release claim      release claim      release custody, release claim
                                                                                     │
                                                                                     ▼ confirmed
    ┌───────────────────────────────────────────────────────┐   ┌─────────────────────┐
    │ ONE UNIT OF WORK                                      │──►│ PUBLISH (no await)  │
    │ loan ACTIVE + reputation + payment binding + event    │   └─────────────────────┘
    └──────────────────┬────────────────────────────────────┘
                       │ write failed
                       ▼
    incident recorded, CRITICAL logged, custody lock and claim kept,
    ExternalSuccessLocalInconsistency raised

Repayment confirms the borrower's payment of the quoted total, then
releases custody. Collateral claims transfer the custody token to the
lender. A purchase locks the seller's token, confirms the buyer's payment
of the asking price, then transfers the token to the buyer. All of them
share the claim, abort and inconsistency handling above.

A confirmed transfer settles exactly one operation: its reference is bound
to the loan (or asset) and operation in the same unit of work as the
transition, and a caller-supplied `payment_ref` already bound elsewhere is
rejected before any external call.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from parcelfi.core import utc_now
from parcelfi.integrations.ledger_topic import LedgerTopicClient
from parcelfi.integrations.settlement_network import SettlementClient, SettlementNetworkError
from parcelfi.proofs import SigningKey
from parcelfi.settlement.config import LendingConfig
from parcelfi.settlement.custody import CustodyCoordinator, CustodyStatus
from parcelfi.settlement.errors import (
    CustodyFailedError,
    ExternalSuccessLocalInconsistency,
    MismatchedAmountError,
    PendingError,
    RejectedError,
    SettlementFailedError,
    StaleStateError,
)
from parcelfi.settlement.ledger import LedgerPublisher
from parcelfi.settlement.loans import LoanStateMachine
from parcelfi.settlement.models import (
    PLATFORM_ACCOUNT_ID,
    Asset,
    AssetStatus,
    LifecycleEvent,
    LifecycleEventType,
    Loan,
    LoanStatus,
    LoanTerms,
    RepaymentQuote,
    SettlementRecord,
    VerificationOutcome,
)
from parcelfi.settlement.observability import (
    ErrorCode,
    LendingLayer,
    get_logger,
    operation_context,
    timed_operation,
)
from parcelfi.settlement.reputation import ReputationAdjuster
from parcelfi.settlement.store import LendingStore
from parcelfi.settlement.verifier import SettlementVerifier

logger = get_logger("engine", LendingLayer.ENGINE)


@dataclass(frozen=True)
class RepaymentResult:
    loan: Loan
    quote: RepaymentQuote
    tx_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan": self.loan.to_dict(),
            "quote": self.quote.to_dict(),
            "tx_ref": self.tx_ref,
        }


class SettlementEngine:
    """
    Entry point for loan operations.

    Example:
        engine = SettlementEngine(store, network, ledger_client=topic)
        loan = await engine.open_loan("alice", "parcel-7", terms)
        loan = await engine.fund_loan(loan.loan_id, lender_id="bob")
        result = await engine.repay_loan(loan.loan_id, payer_id="alice")
    """

    def __init__(
        self,
        store: LendingStore,
        client: SettlementClient,
        ledger_client: Optional[LedgerTopicClient] = None,
        config: Optional[LendingConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        signing_key: Optional[SigningKey] = None,
    ):
        self.store = store
        self.config = config or LendingConfig()
        self._client = client
        self._clock = clock
        self.loans = LoanStateMachine(store, self.config.policy, clock)
        self.custody = CustodyCoordinator(client, store, self.config.custody)
        self.verifier = SettlementVerifier(client, self.config.settlement, store, clock)
        self.reputation = ReputationAdjuster(store, self.config.reputation)
        self.ledger = LedgerPublisher(ledger_client, store, self.config.ledger, signing_key)

    # =========================================================================
    # OPEN / CANCEL
    # =========================================================================

    @timed_operation(logger, "open_loan")
    async def open_loan(
        self,
        borrower_id: str,
        asset_id: str,
        terms: Union[LoanTerms, Dict[str, Any]],
    ) -> Loan:
        with operation_context("open_loan"):
            if isinstance(terms, dict):
                try:
                    terms = LoanTerms.from_dict(terms)
                except ValueError as e:
                    raise RejectedError(f"invalid loan terms: {e}") from e
            asset = self.store.require_asset(asset_id)

            with self.store.transaction() as uow:
                loan = self.loans.open(uow, borrower_id, asset, terms)
                event = uow.append_event(LifecycleEvent.create(
                    LifecycleEventType.LOAN_OPENED,
                    loan,
                    loan.created_at,
                    borrower_id=borrower_id,
                    kind=terms.kind.value,
                    principal=terms.principal,
                    rate_bps=terms.rate_bps,
                    duration_months=terms.duration_months,
                ))

            self.ledger.publish(event)
            return loan

    async def open_express_loan(self, borrower_id: str, asset_id: str, principal: Decimal) -> Loan:
        """Open a platform-funded loan on the express policy's fixed terms."""
        return await self.open_loan(borrower_id, asset_id, self.loans.express_terms(principal))

    @timed_operation(logger, "cancel_loan")
    async def cancel_loan(self, loan_id: str, requester_id: str) -> Loan:
        with operation_context("cancel_loan"):
            loan = self.store.require_loan(loan_id)
            with self.store.transaction() as uow:
                cancelled = self.loans.cancel(uow, loan, requester_id)
                event = uow.append_event(LifecycleEvent.create(
                    LifecycleEventType.LOAN_CANCELLED,
                    cancelled,
                    cancelled.closed_at,
                    requester_id=requester_id,
                ))

            self.ledger.publish(event)
            return cancelled

    # =========================================================================
    # FUND
    # =========================================================================

    @timed_operation(logger, "fund_loan")
    async def fund_loan(
        self,
        loan_id: str,
        lender_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
    ) -> Loan:
        """
        Fund an open loan.

        Peer-to-peer loans move the principal lender -> borrower, or reuse
        `payment_ref` when the lender already paid. Express loans are
        funded by the platform and only lock custody here.
        """
        with operation_context("fund_loan"):
            loan = self.store.require_loan(loan_id)
            lender_id = self.loans.resolve_lender(loan, lender_id)
            borrower = self.store.get_account(loan.borrower_id)
            lender = self.store.get_account(lender_id)
            self.loans.check_fund(loan, lender_id, borrower, lender)
            token_id = self.store.require_asset(loan.asset_id).custody_token_id
            self._check_payment_ref(payment_ref, loan_id, "fund")

            claimed = self.store.claim_loan(loan_id, LoanStatus.OPEN, "fund")
            tx_ref: Optional[str] = None
            record: Optional[SettlementRecord] = None
            try:
                if not loan.terms.is_express and payment_ref is None:
                    await self._check_funds(lender.settlement_account, loan.principal, loan_id=loan_id)

                lock = await self.custody.lock(token_id, borrower.settlement_account, loan_id=loan_id)
                if not lock.ok:
                    if lock.status == CustodyStatus.UNKNOWN:
                        await self._compensate_release(
                            token_id, "custody lock outcome unknown", "fund", loan_id=loan_id,
                        )
                    raise CustodyFailedError(f"custody lock failed: {lock.error}", token_id)

                if not loan.terms.is_express:
                    try:
                        record = await self._confirm_payment(
                            payer=lender.settlement_account,
                            payee=borrower.settlement_account,
                            amount=loan.principal,
                            payment_ref=payment_ref,
                            loan_id=loan_id,
                            flow="fund",
                        )
                    except Exception as e:
                        await self._compensate_release(
                            token_id, f"payment step raised {type(e).__name__}", "fund", loan_id=loan_id,
                        )
                        raise
                    tx_ref = record.tx_ref
                    if record.outcome != VerificationOutcome.CONFIRMED:
                        await self._compensate_release(
                            token_id, f"payment {record.outcome.value}", "fund", loan_id=loan_id,
                        )
                        self._raise_unless_confirmed(record)
            except Exception:
                self.store.release_claim(claimed)
                raise

            try:
                with self.store.transaction() as uow:
                    funded = self.loans.fund(uow, claimed, lender_id)
                    self.reputation.stage(uow, LifecycleEventType.LOAN_FUNDED, funded)
                    if tx_ref:
                        uow.bind_payment(tx_ref, loan_id, "fund")
                    event = uow.append_event(LifecycleEvent.create(
                        LifecycleEventType.LOAN_FUNDED,
                        funded,
                        funded.funded_at,
                        lender_id=lender_id,
                        principal=funded.principal,
                        due_date=funded.due_date,
                        tx_ref=tx_ref,
                        custody_tx_ref=lock.tx_ref,
                        unverified_amount=bool(record and record.unverified_amount),
                    ))
            except Exception as e:
                raise self._inconsistency("fund_loan", tx_ref, token_id, e, loan_id=loan_id) from e

            self.ledger.publish(event)
            logger.info(
                "Loan funded",
                loan_id=loan_id,
                lender_id=lender_id,
                tx_ref=tx_ref,
                due_date=funded.due_date.isoformat(),
            )
            return funded

    # =========================================================================
    # REPAY
    # =========================================================================

    @timed_operation(logger, "repay_loan")
    async def repay_loan(
        self,
        loan_id: str,
        payer_id: str,
        payment_ref: Optional[str] = None,
    ) -> RepaymentResult:
        """
        Repay an active loan in full.

        The borrower pays the quoted total to the lender (the platform
        account for express loans); custody is released once the payment
        is confirmed.
        """
        with operation_context("repay_loan"):
            loan = self.store.require_loan(loan_id)
            self.loans.check_repay(loan, payer_id)
            payer = self._settlement_account_of(loan.borrower_id)
            payee = self._settlement_account_of(loan.lender_id)
            token_id = self.store.require_asset(loan.asset_id).custody_token_id
            self._check_payment_ref(payment_ref, loan_id, "repay")

            claimed = self.store.claim_loan(loan_id, LoanStatus.ACTIVE, "repay")
            try:
                quote = self.loans.quote(claimed)
                if payment_ref is None:
                    await self._check_funds(payer, quote.total, loan_id=loan_id)
                record = await self._confirm_payment(
                    payer=payer,
                    payee=payee,
                    amount=quote.total,
                    payment_ref=payment_ref,
                    loan_id=loan_id,
                    flow="repay",
                )
                self._raise_unless_confirmed(record)

                release = await self.custody.release(token_id, loan_id=loan_id)
                if not release.ok:
                    raise CustodyFailedError(
                        f"payment {record.tx_ref} confirmed but custody release failed: {release.error}",
                        token_id,
                        tx_ref=record.tx_ref,
                    )
            except Exception:
                self.store.release_claim(claimed)
                raise

            try:
                with self.store.transaction() as uow:
                    repaid, quote = self.loans.repay(uow, claimed, payer_id, quote)
                    self.reputation.stage(uow, LifecycleEventType.LOAN_REPAID, repaid)
                    uow.bind_payment(record.tx_ref, loan_id, "repay")
                    event = uow.append_event(LifecycleEvent.create(
                        LifecycleEventType.LOAN_REPAID,
                        repaid,
                        repaid.closed_at,
                        payer_id=payer_id,
                        principal=quote.principal,
                        interest=quote.interest,
                        total=quote.total,
                        months_elapsed=quote.months_elapsed,
                        tx_ref=record.tx_ref,
                        unverified_amount=record.unverified_amount,
                    ))
            except Exception as e:
                raise self._inconsistency("repay_loan", record.tx_ref, token_id, e, loan_id=loan_id) from e

            self.ledger.publish(event)
            logger.info(
                "Loan repaid",
                loan_id=loan_id,
                total=str(quote.total),
                tx_ref=record.tx_ref,
            )
            return RepaymentResult(loan=repaid, quote=quote, tx_ref=record.tx_ref)

    @timed_operation(logger, "quote_repayment")
    async def quote_repayment(self, loan_id: str, as_of: Optional[datetime] = None) -> RepaymentQuote:
        loan = self.store.require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise StaleStateError(loan_id, LoanStatus.ACTIVE.value, loan.status.value)
        return self.loans.quote(loan, as_of)

    # =========================================================================
    # CLAIM COLLATERAL
    # =========================================================================

    @timed_operation(logger, "claim_collateral")
    async def claim_collateral(self, loan_id: str, claimant_id: str) -> Loan:
        """Liquidate an overdue loan: the custody token moves to the lender."""
        with operation_context("claim_collateral"):
            loan = self.store.require_loan(loan_id)
            self.loans.check_liquidate(loan, claimant_id, self._clock())
            new_owner = self._settlement_account_of(claimant_id)
            token_id = self.store.require_asset(loan.asset_id).custody_token_id

            claimed = self.store.claim_loan(loan_id, LoanStatus.ACTIVE, "liquidate")
            try:
                transfer = await self.custody.transfer_ownership(token_id, new_owner, loan_id=loan_id)
                if not transfer.ok:
                    raise CustodyFailedError(
                        f"custody transfer failed: {transfer.error}", token_id,
                    )
            except Exception:
                self.store.release_claim(claimed)
                raise

            try:
                with self.store.transaction() as uow:
                    liquidated = self.loans.liquidate(uow, claimed, claimant_id)
                    self.reputation.stage(uow, LifecycleEventType.COLLATERAL_LIQUIDATED, liquidated)
                    event = uow.append_event(LifecycleEvent.create(
                        LifecycleEventType.COLLATERAL_LIQUIDATED,
                        liquidated,
                        liquidated.closed_at,
                        claimant_id=claimant_id,
                        new_owner_account=new_owner,
                        custody_tx_ref=transfer.tx_ref,
                        due_date=loan.due_date,
                    ))
            except Exception as e:
                raise self._inconsistency(
                    "claim_collateral", transfer.tx_ref, token_id, e, loan_id=loan_id,
                ) from e

            self.ledger.publish(event)
            logger.info("Collateral liquidated", loan_id=loan_id, claimant_id=claimant_id)
            return liquidated

    # =========================================================================
    # PURCHASE
    # =========================================================================

    @timed_operation(logger, "purchase_asset")
    async def purchase_asset(
        self,
        asset_id: str,
        buyer_id: str,
        payment_ref: Optional[str] = None,
    ) -> Asset:
        """
        Buy a listed parcel outright at its listed value.

        The seller's token is locked first so it cannot be pledged while
        the buyer pays; once the payment is confirmed the token moves to
        the buyer and the asset is marked SOLD.
        """
        with operation_context("purchase_asset"):
            asset = self.store.require_asset(asset_id)
            self.loans.check_purchase(asset, buyer_id)
            buyer_account = self._settlement_account_of(buyer_id)
            seller_account = self._settlement_account_of(asset.owner_id)
            token_id = asset.custody_token_id
            self._check_payment_ref(payment_ref, asset_id, "purchase")

            claimed = self.store.claim_asset(asset_id, AssetStatus.LISTED, "purchase")
            price = claimed.value
            try:
                if payment_ref is None:
                    await self._check_funds(buyer_account, price, asset_id=asset_id)

                lock = await self.custody.lock(token_id, seller_account)
                if not lock.ok:
                    if lock.status == CustodyStatus.UNKNOWN:
                        await self._compensate_release(
                            token_id, "custody lock outcome unknown", "purchase", asset_id=asset_id,
                        )
                    raise CustodyFailedError(f"custody lock failed: {lock.error}", token_id)

                try:
                    record = await self._confirm_payment(
                        payer=buyer_account,
                        payee=seller_account,
                        amount=price,
                        payment_ref=payment_ref,
                        flow="purchase",
                        asset_id=asset_id,
                    )
                except Exception as e:
                    await self._compensate_release(
                        token_id, f"payment step raised {type(e).__name__}", "purchase", asset_id=asset_id,
                    )
                    raise
                if record.outcome != VerificationOutcome.CONFIRMED:
                    await self._compensate_release(
                        token_id, f"payment {record.outcome.value}", "purchase", asset_id=asset_id,
                    )
                    self._raise_unless_confirmed(record)

                transfer = await self.custody.transfer_ownership(token_id, buyer_account)
                if not transfer.ok:
                    raise CustodyFailedError(
                        f"payment {record.tx_ref} confirmed but custody transfer failed: {transfer.error}",
                        token_id,
                        tx_ref=record.tx_ref,
                    )
            except Exception:
                self.store.release_asset_claim(claimed)
                raise

            try:
                with self.store.transaction() as uow:
                    sold = self.loans.sell(uow, claimed, buyer_id)
                    uow.bind_payment(record.tx_ref, asset_id, "purchase")
                    event = uow.append_event(LifecycleEvent.for_asset(
                        LifecycleEventType.ASSET_PURCHASED,
                        sold,
                        self._clock(),
                        seller_id=claimed.owner_id,
                        buyer_id=buyer_id,
                        price=price,
                        tx_ref=record.tx_ref,
                        custody_tx_ref=transfer.tx_ref,
                        unverified_amount=record.unverified_amount,
                    ))
            except Exception as e:
                raise self._inconsistency(
                    "purchase_asset", record.tx_ref, token_id, e, asset_id=asset_id,
                ) from e

            self.ledger.publish(event)
            logger.info(
                "Asset purchased",
                asset_id=asset_id,
                buyer_id=buyer_id,
                price=str(price),
                tx_ref=record.tx_ref,
            )
            return sold

    async def drain(self) -> None:
        """Wait for in-flight ledger mirrors."""
        await self.ledger.drain()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _settlement_account_of(self, account_id: Optional[str]) -> str:
        if account_id == PLATFORM_ACCOUNT_ID:
            return self.config.settlement.platform_account.get()
        account = self.store.get_account(account_id) if account_id else None
        if account is None or not account.settlement_account:
            raise RejectedError(f"account {account_id} has no settlement account")
        return account.settlement_account

    def _check_payment_ref(self, payment_ref: Optional[str], subject_id: str, operation: str) -> None:
        """Reject a transfer reference that already settled another operation."""
        if payment_ref is None:
            return
        bound = self.store.payment_binding(payment_ref)
        if bound is None or bound == (subject_id, operation):
            return
        logger.warning(
            "Payment reference already used",
            error_code=ErrorCode.PAYMENT_REUSED,
            tx_ref=payment_ref,
            subject_id=subject_id,
            operation_requested=operation,
            bound_subject_id=bound[0],
            bound_operation=bound[1],
        )
        raise RejectedError(
            f"payment {payment_ref} already settled {bound[1]} for {bound[0]}",
            http_status=409,
        )

    async def _check_funds(
        self,
        payer: str,
        amount: Decimal,
        loan_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> None:
        """Refuse to submit a transfer the payer cannot cover."""
        try:
            balance = await self._client.check_balance(payer)
        except SettlementNetworkError as e:
            # The verifier still rejects a transfer that fails for lack of funds
            logger.warning(
                "Balance check unavailable, submitting transfer unchecked",
                payer=payer,
                loan_id=loan_id,
                asset_id=asset_id,
                error=str(e),
            )
            return
        if balance < amount:
            logger.warning(
                "Payer balance below transfer amount",
                error_code=ErrorCode.INSUFFICIENT_BALANCE,
                payer=payer,
                amount=str(amount),
                loan_id=loan_id,
                asset_id=asset_id,
            )
            raise RejectedError(f"insufficient balance to pay {amount}")

    async def _confirm_payment(
        self,
        payer: str,
        payee: str,
        amount: Decimal,
        payment_ref: Optional[str] = None,
        loan_id: Optional[str] = None,
        flow: Optional[str] = None,
        **details: Any,
    ) -> SettlementRecord:
        """Submit the transfer unless the caller already paid, then verify it."""
        tx_ref = payment_ref
        if tx_ref is None:
            attempt_id = self.store.record_attempt(
                "submit_transfer",
                payee,
                loan_id=loan_id,
                flow=flow,
                payer=payer,
                amount=amount,
                **details,
            )
            try:
                tx_ref = await self._client.submit_transfer(payer, payee, amount)
            except SettlementNetworkError as e:
                self.store.complete_attempt(attempt_id, "error", str(e) or type(e).__name__)
                logger.error(
                    "Transfer submission failed",
                    error_code=ErrorCode.SETTLEMENT_FAILED,
                    loan_id=loan_id,
                    payer=payer,
                    payee=payee,
                    error=str(e),
                    **details,
                )
                raise SettlementFailedError(f"transfer submission failed: {e}", tx_ref="") from e
            self.store.complete_attempt(attempt_id, "submitted", None)
            logger.info("Transfer submitted", loan_id=loan_id, tx_ref=tx_ref, amount=str(amount), **details)

        return await self.verifier.confirm(
            tx_ref, amount, payer=payer, payee=payee, loan_id=loan_id,
        )

    def _raise_unless_confirmed(self, record: SettlementRecord) -> None:
        if record.outcome == VerificationOutcome.CONFIRMED:
            return
        if record.outcome == VerificationOutcome.PENDING:
            raise PendingError(
                f"transfer {record.tx_ref} is not final yet",
                tx_ref=record.tx_ref,
                retry_after_seconds=self.config.settlement.pending_retry_after_seconds.get(),
            )
        if record.outcome == VerificationOutcome.MISMATCHED:
            raise MismatchedAmountError(
                record.tx_ref, record.expected_amount, record.actual_amount, reason=record.detail,
            )
        raise SettlementFailedError(record.detail or "transfer failed", record.tx_ref)

    async def _compensate_release(
        self,
        token_id: str,
        reason: str,
        operation: str,
        loan_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> None:
        """Undo a custody lock; a failure here is recorded, never raised."""
        try:
            outcome = await self.custody.release(token_id, loan_id=loan_id)
        except Exception as e:
            ended, error = "error", f"{type(e).__name__}: {e}"
        else:
            if outcome.ok:
                logger.info(
                    "Custody lock compensated",
                    loan_id=loan_id,
                    asset_id=asset_id,
                    token_id=token_id,
                    reason=reason,
                )
                return
            ended, error = outcome.status.value, outcome.error

        incident = self.store.record_incident(
            f"{operation}_compensation",
            loan_id,
            asset_id=asset_id,
            custody_token_id=token_id,
            detail=f"release after '{reason}' ended {ended}: {error}",
        )
        logger.error(
            "Compensating custody release failed",
            error_code=ErrorCode.COMPENSATION_FAILED,
            loan_id=loan_id,
            asset_id=asset_id,
            token_id=token_id,
            reason=reason,
            outcome=ended,
            incident_id=incident.incident_id,
        )

    def _inconsistency(
        self,
        operation: str,
        tx_ref: Optional[str],
        token_id: Optional[str],
        cause: Exception,
        loan_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> ExternalSuccessLocalInconsistency:
        incident = self.store.record_incident(
            operation,
            loan_id,
            asset_id=asset_id,
            tx_ref=tx_ref,
            custody_token_id=token_id,
            detail=f"{type(cause).__name__}: {cause}",
        )
        logger.critical(
            "External effect committed but local write failed",
            error_code=ErrorCode.EXTERNAL_SUCCESS_LOCAL_INCONSISTENCY,
            loan_id=loan_id,
            asset_id=asset_id,
            tx_ref=tx_ref,
            custody_token_id=token_id,
            incident_id=incident.incident_id,
            error=str(cause),
        )
        return ExternalSuccessLocalInconsistency(
            operation, loan_id, tx_ref, token_id, incident.incident_id, cause=cause, asset_id=asset_id,
        )
