"""Domain models - pure Python dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class SettlementStatus(str, Enum):
    """Lifecycle of a settlement row"""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# Statuses that block a (position, date) key from being paid again
ACTIVE_SETTLEMENT_STATUSES = (SettlementStatus.PENDING.value, SettlementStatus.PROCESSED.value)


@dataclass(frozen=True)
class AccrualKey:
    """Idempotency key shared by accruals and settlements"""

    position_id: uuid.UUID
    date: date


@dataclass
class AccrualCandidate:
    """Recorded accrual with excess > 0, joined to its borrower and market"""

    position_id: uuid.UUID
    date: date
    excess_amount: int
    borrower_address: str
    settlement_asset: str
    market_name: str

    @property
    def key(self) -> AccrualKey:
        return AccrualKey(self.position_id, self.date)


@dataclass(frozen=True)
class Contribution:
    """One (position, date, amount) share of an obligation batch"""

    position_id: uuid.UUID
    date: date
    amount: int


@dataclass
class ObligationBatch:
    """Unpaid excess for one borrower in one settlement asset"""

    borrower_address: str
    asset: str
    total_amount: int
    contributions: List[Contribution]
    market_names: List[str] = field(default_factory=list)

    @property
    def keys(self) -> List[AccrualKey]:
        return [AccrualKey(c.position_id, c.date) for c in self.contributions]


@dataclass
class Receipt:
    """Mined transaction receipt"""

    tx_hash: str
    success: bool
    gas_used: int
    block_number: Optional[int] = None


@dataclass
class TransferOutcome:
    """Final result of disbursing one obligation batch"""

    status: SettlementStatus
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None  # precondition that blocked submission


@dataclass
class AccrualReport:
    """Counts emitted by one accrual run"""

    date: date
    positions_processed: int = 0
    positions_skipped: int = 0
    total_accrued: int = 0
    total_excess: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "positions_processed": self.positions_processed,
            "positions_skipped": self.positions_skipped,
            "total_accrued": str(self.total_accrued),
            "total_excess": str(self.total_excess),
            "errors": list(self.errors),
        }


@dataclass
class DisbursementReport:
    """Counts emitted by one settlement pass"""

    borrowers_processed: int = 0
    transactions_created: int = 0
    failed_batches: int = 0
    pending_batches: int = 0
    total_disbursed: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "borrowers_processed": self.borrowers_processed,
            "transactions_created": self.transactions_created,
            "failed_batches": self.failed_batches,
            "pending_batches": self.pending_batches,
            "total_disbursed": {asset: str(amount) for asset, amount in self.total_disbursed.items()},
            "errors": list(self.errors),
            "dry_run": self.dry_run,
        }


@dataclass
class ReconciliationReport:
    """Counts emitted by one reconciliation pass"""

    checked: int = 0
    processed: int = 0
    failed: int = 0
    still_pending: int = 0
    stale_pending: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "processed": self.processed,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "stale_pending": self.stale_pending,
            "errors": list(self.errors),
        }
