"""
Reconciliation

Operator-facing view of everything the engine could not finish on its own:

    incidents       external effect committed, local write failed
    stuck claims    loans and assets still marked with a pending operation
    open attempts   external calls logged but never completed
    mirrors         lifecycle events not yet on the public ledger

Resolving an incident records the operator's resolution and clears the
operation claim left on the loan or asset, so it can be operated on again.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from parcelfi.core import now_iso8601
from parcelfi.settlement.ledger import LedgerPublisher
from parcelfi.settlement.models import Asset, Loan
from parcelfi.settlement.observability import LendingLayer, get_logger
from parcelfi.settlement.store import AttemptRecord, Incident, IncidentStatus, LendingStore


class Reconciler:
    """Lists and resolves work left behind by interrupted engine operations."""

    def __init__(self, store: LendingStore, publisher: Optional[LedgerPublisher] = None):
        self._store = store
        self._publisher = publisher
        self._logger = get_logger("reconciler", LendingLayer.RECONCILIATION)

    def open_incidents(self) -> List[Incident]:
        return self._store.list_incidents(IncidentStatus.OPEN)

    def stuck_claims(self) -> List[Loan]:
        return [loan for loan in self._store.list_loans() if loan.pending_operation is not None]

    def stuck_asset_claims(self) -> List[Asset]:
        return [asset for asset in self._store.list_assets() if asset.pending_operation is not None]

    def open_attempts(self) -> List[AttemptRecord]:
        return [a for a in self._store.attempts() if a.is_open]

    def resolve_incident(self, incident_id: str, resolution: str) -> Incident:
        """Mark an incident resolved and free its loan or asset for further operations."""
        incident = self._store.resolve_incident(incident_id, resolution)
        if incident.loan_id:
            released = self._store.force_release_claim(incident.loan_id)
        else:
            released = self._store.force_release_asset_claim(incident.asset_id)
        self._logger.info(
            "Incident resolved",
            incident_id=incident_id,
            loan_id=incident.loan_id,
            asset_id=incident.asset_id,
            incident_operation=incident.operation,
            claim_released=released is not None,
            resolution=resolution,
        )
        return incident

    async def republish_pending(self) -> int:
        if self._publisher is None:
            return 0
        count = await self._publisher.republish_pending()
        self._logger.info("Republished pending lifecycle events", mirrored=count)
        return count

    def report(self) -> Dict[str, Any]:
        return {
            "generated_at": now_iso8601(),
            "open_incidents": [i.to_dict() for i in self.open_incidents()],
            "stuck_claims": [
                {
                    "loan_id": loan.loan_id,
                    "status": loan.status.value,
                    "pending_operation": loan.pending_operation,
                    "version": loan.version,
                }
                for loan in self.stuck_claims()
            ],
            "stuck_asset_claims": [
                {
                    "asset_id": asset.asset_id,
                    "status": asset.status.value,
                    "pending_operation": asset.pending_operation,
                    "version": asset.version,
                }
                for asset in self.stuck_asset_claims()
            ],
            "open_attempts": [a.to_dict() for a in self.open_attempts()],
            "unmirrored_events": [e.event_id for e in self._store.unmirrored_events()],
        }
