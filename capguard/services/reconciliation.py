"""Resolves settlements left pending after an unconfirmed broadcast"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from capguard.domain.exceptions import StorageUnavailableError, TransferError
from capguard.domain.models import ReconciliationReport, SettlementStatus
from capguard.infrastructure.clients.chain import ChainClient
from capguard.infrastructure.database.repositories import SettlementRepository
from capguard.utils.date_utils import as_utc, utc_now

logger = logging.getLogger(__name__)


class SettlementReconciler:
    """
    Looks up receipts for pending transfers and finalizes their rows.

    Read-only towards the chain: nothing is ever resubmitted from here. A
    transaction with no receipt after `stale_after_hours` was most likely
    dropped by the network and is reported as an error for an operator to resolve.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        chain: ChainClient,
        clock: Callable[[], datetime] = utc_now,
        stale_after_hours: float = 6.0,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.clock = clock
        self.stale_after = timedelta(hours=stale_after_hours)

    async def run(self) -> ReconciliationReport:
        report = ReconciliationReport()

        try:
            with self.session_factory() as db:
                pending = SettlementRepository(db).list_pending_with_hash()
                # Oldest submission time per hash, in first-seen order
                submitted_at: Dict[str, datetime] = {}
                for row in pending:
                    created = as_utc(row.created_at)
                    if row.tx_hash not in submitted_at or created < submitted_at[row.tx_hash]:
                        submitted_at[row.tx_hash] = created
        except SQLAlchemyError as e:
            raise StorageUnavailableError(f"Cannot read pending settlements: {e}") from e

        if not submitted_at:
            logger.info("No pending settlements to reconcile")
            return report

        resolved: Dict[str, tuple] = {}
        now = self.clock()
        for tx_hash, created in submitted_at.items():
            report.checked += 1
            try:
                receipt = await self.chain.get_receipt(tx_hash)
            except TransferError as e:
                report.errors.append(f"Receipt lookup failed for {tx_hash}: {e}")
                logger.error("Receipt lookup failed", extra={"tx_hash": tx_hash, "reason": str(e)})
                continue

            if receipt is None:
                report.still_pending += 1
                age = now - created
                if age >= self.stale_after:
                    report.stale_pending += 1
                    report.errors.append(f"Transaction {tx_hash} unconfirmed for {age}, likely dropped")
                    logger.error(
                        "Pending settlement unconfirmed past alert threshold, manual reconciliation required",
                        extra={"tx_hash": tx_hash, "age_hours": round(age.total_seconds() / 3600, 1)},
                    )
                else:
                    logger.warning("Transaction still unconfirmed", extra={"tx_hash": tx_hash})
                continue

            status = SettlementStatus.PROCESSED if receipt.success else SettlementStatus.FAILED
            resolved[tx_hash] = (status, receipt.gas_used)

        for tx_hash, (status, gas_used) in resolved.items():
            try:
                with self.session_factory() as db:
                    rows = SettlementRepository(db).resolve_pending(tx_hash, status, gas_used)
                    db.commit()
            except SQLAlchemyError as e:
                report.errors.append(f"Cannot finalize settlements for {tx_hash}: {e}")
                logger.critical(
                    "Confirmed transaction not recorded, manual reconciliation required",
                    extra={"tx_hash": tx_hash, "status": status.value},
                )
                continue

            if status is SettlementStatus.PROCESSED:
                report.processed += 1
            else:
                report.failed += 1
            logger.info("Pending settlement resolved", extra={"tx_hash": tx_hash, "status": status.value, "rows": rows})

        logger.log(
            logging.ERROR if report.errors else logging.INFO,
            "Reconciliation completed",
            extra={"step": "reconcile_complete", **report.as_dict()},
        )
        return report
