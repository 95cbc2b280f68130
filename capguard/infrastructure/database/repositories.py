"""Data access layer for positions and the settlement ledger"""

import uuid
from datetime import date
from typing import List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from capguard.domain.models import (
    ACTIVE_SETTLEMENT_STATUSES,
    AccrualCandidate,
    AccrualKey,
    ObligationBatch,
    SettlementStatus,
    TransferOutcome,
)
from capguard.infrastructure.database.models import Borrower, InterestAccrual, Market, Position, Settlement


class PositionRepository:
    """Read-only view of positions owned by position sync"""

    def __init__(self, db: Session):
        self.db = db

    def list_active(self) -> List[Position]:
        """Active positions with market and borrower loaded"""
        return (
            self.db.query(Position)
            .options(joinedload(Position.market), joinedload(Position.borrower))
            .filter(Position.is_active.is_(True))
            .order_by(Position.opened_at, Position.id)
            .all()
        )


class AccrualRepository:
    """Repository for daily interest accruals"""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, position_id: uuid.UUID, accrual_date: date) -> bool:
        return (
            self.db.query(InterestAccrual.id)
            .filter(InterestAccrual.position_id == position_id, InterestAccrual.date == accrual_date)
            .first()
            is not None
        )

    def create_accrual(
        self,
        position_id: uuid.UUID,
        accrual_date: date,
        accrued_amount: int,
        actual_rate_bps: int,
        capped_rate_bps: int,
        excess_amount: int,
    ) -> InterestAccrual:
        """Stage an accrual row; the (position, date) constraint rejects duplicates on flush"""
        accrual = InterestAccrual(
            position_id=position_id,
            date=accrual_date,
            accrued_amount=accrued_amount,
            actual_rate_bps=actual_rate_bps,
            capped_rate_bps=capped_rate_bps,
            excess_amount=excess_amount,
        )
        self.db.add(accrual)
        self.db.flush()
        return accrual

    def list_excess_candidates(self) -> List[AccrualCandidate]:
        """All accruals with excess > 0, oldest first"""
        rows = (
            self.db.query(
                InterestAccrual.position_id,
                InterestAccrual.date,
                InterestAccrual.excess_amount,
                Borrower.address,
                Market.loan_asset,
                Market.name,
            )
            .join(Position, InterestAccrual.position_id == Position.id)
            .join(Borrower, Position.borrower_id == Borrower.id)
            .join(Market, Position.market_id == Market.id)
            .filter(InterestAccrual.excess_amount > 0)
            .order_by(InterestAccrual.date, InterestAccrual.position_id)
            .all()
        )
        return [
            AccrualCandidate(
                position_id=position_id,
                date=accrual_date,
                excess_amount=excess,
                borrower_address=address,
                settlement_asset=asset,
                market_name=name,
            )
            for position_id, accrual_date, excess, address, asset, name in rows
        ]


class SettlementRepository:
    """Repository for settlement rows"""

    def __init__(self, db: Session):
        self.db = db

    def active_keys(self) -> Set[AccrualKey]:
        """(position, date) keys with a pending or processed settlement"""
        rows = (
            self.db.query(Settlement.position_id, Settlement.date)
            .filter(Settlement.status.in_(ACTIVE_SETTLEMENT_STATUSES))
            .all()
        )
        return {AccrualKey(position_id, settled_date) for position_id, settled_date in rows}

    def record_batch(self, batch: ObligationBatch, outcome: TransferOutcome) -> List[Settlement]:
        """
        Stage one settlement row per contribution, all carrying the batch outcome.

        The caller commits; one commit covers every row of the batch.
        """
        rows = [
            Settlement(
                position_id=contribution.position_id,
                date=contribution.date,
                amount=contribution.amount,
                tx_hash=outcome.tx_hash,
                status=outcome.status.value,
                gas_used=outcome.gas_used,
                error=outcome.error,
                attempts=outcome.attempts,
            )
            for contribution in batch.contributions
        ]
        self.db.add_all(rows)
        self.db.flush()
        return rows

    def list_pending_with_hash(self) -> List[Settlement]:
        return (
            self.db.query(Settlement)
            .filter(Settlement.status == SettlementStatus.PENDING.value, Settlement.tx_hash.isnot(None))
            .order_by(Settlement.created_at)
            .all()
        )

    def resolve_pending(self, tx_hash: str, status: SettlementStatus, gas_used: Optional[int] = None) -> int:
        """Move every pending row for a transaction to its final status"""
        rows = (
            self.db.query(Settlement)
            .filter(Settlement.tx_hash == tx_hash, Settlement.status == SettlementStatus.PENDING.value)
            .all()
        )
        for row in rows:
            row.status = status.value
            if gas_used is not None:
                row.gas_used = gas_used
        self.db.flush()
        return len(rows)

    def list_history(
        self,
        status: Optional[SettlementStatus] = None,
        borrower_address: Optional[str] = None,
        market_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Tuple[Settlement, str, str]]:
        """Settlement rows with borrower address and market name, newest first"""
        query = (
            self.db.query(Settlement, Borrower.address, Market.name)
            .join(Position, Settlement.position_id == Position.id)
            .join(Borrower, Position.borrower_id == Borrower.id)
            .join(Market, Position.market_id == Market.id)
        )
        if status is not None:
            query = query.filter(Settlement.status == status.value)
        if borrower_address:
            query = query.filter(func.lower(Borrower.address) == borrower_address.lower())
        if market_id:
            query = query.filter(Market.market_id == market_id)

        rows = (
            query.order_by(Settlement.created_at.desc(), Settlement.date.desc(), Settlement.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [(settlement, address, market_name) for settlement, address, market_name in rows]
