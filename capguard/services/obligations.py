"""Obligation aggregation - unsettled excess grouped into transfer batches"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from capguard.domain.exceptions import StorageUnavailableError
from capguard.domain.models import ObligationBatch, SettlementStatus
from capguard.domain.obligations import build_obligation_batches
from capguard.infrastructure.database.repositories import AccrualRepository, SettlementRepository

logger = logging.getLogger(__name__)


class ObligationAggregator:
    """Builds the candidate payments for a settlement pass"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def pending_batches(self) -> List[ObligationBatch]:
        """
        Unsettled excess grouped by (borrower, settlement asset).

        Flow:
        1. Load accruals with excess > 0
        2. Load (position, date) keys that already have a pending/processed settlement
        3. Drop settled keys, group, sum and drop non-positive batches

        Raises:
            StorageUnavailableError: The ledger could not be read
        """
        try:
            with self.session_factory() as db:
                candidates = AccrualRepository(db).list_excess_candidates()
                settled_keys = SettlementRepository(db).active_keys()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(f"Cannot read settlement ledger: {e}") from e

        batches = build_obligation_batches(candidates, settled_keys)
        logger.info(
            "Obligations aggregated",
            extra={
                "candidates": len(candidates),
                "already_settled": len(settled_keys),
                "batches": len(batches),
            },
        )
        return batches

    def pending_by_borrower(self) -> List[Dict[str, Any]]:
        """Per-borrower summary of outstanding excess for operators"""
        summary: Dict[str, Dict[str, Any]] = {}
        for batch in self.pending_batches():
            entry = summary.setdefault(
                batch.borrower_address,
                {"borrower_address": batch.borrower_address, "totals": defaultdict(int), "positions": set(), "markets": set()},
            )
            entry["totals"][batch.asset] += batch.total_amount
            entry["positions"].update(c.position_id for c in batch.contributions)
            entry["markets"].update(batch.market_names)

        return [
            {
                "borrower_address": entry["borrower_address"],
                "totals": dict(entry["totals"]),
                "position_count": len(entry["positions"]),
                "market_names": sorted(entry["markets"]),
            }
            for entry in summary.values()
        ]

    def settlement_history(
        self,
        status: Optional[SettlementStatus] = None,
        borrower_address: Optional[str] = None,
        market_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Settlement rows newest first, including failed attempts.

        Raises:
            StorageUnavailableError: The ledger could not be read
        """
        try:
            with self.session_factory() as db:
                rows = SettlementRepository(db).list_history(
                    status=status,
                    borrower_address=borrower_address,
                    market_id=market_id,
                    limit=limit,
                    offset=offset,
                )
                return [
                    {
                        "id": str(settlement.id),
                        "borrower_address": address,
                        "market_name": market_name,
                        "position_id": str(settlement.position_id),
                        "date": settlement.date.isoformat(),
                        "amount": settlement.amount,
                        "status": settlement.status,
                        "tx_hash": settlement.tx_hash,
                        "gas_used": settlement.gas_used,
                        "attempts": settlement.attempts,
                        "error": settlement.error,
                        "created_at": settlement.created_at.isoformat() if settlement.created_at else None,
                    }
                    for settlement, address, market_name in rows
                ]
        except SQLAlchemyError as e:
            raise StorageUnavailableError(f"Cannot read settlement history: {e}") from e
