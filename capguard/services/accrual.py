"""Daily interest accrual - one ledger row per active position per day"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from capguard.config import settings
from capguard.domain.calculator import daily_interest, excess_interest, to_smallest_unit
from capguard.domain.exceptions import (
    InvalidAmountError,
    InvalidRateError,
    MissingRateCapError,
    RateSourceError,
    StorageUnavailableError,
)
from capguard.domain.models import AccrualReport
from capguard.infrastructure.clients.rates import RateSource
from capguard.infrastructure.database.repositories import AccrualRepository, PositionRepository
from capguard.infrastructure.observability.logging import log_accrual_report
from capguard.infrastructure.observability.metrics import (
    accrual_errors_counter,
    excess_recorded_counter,
    positions_accrued_counter,
)
from capguard.utils.date_utils import to_accrual_date, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PositionView:
    """Fields of an active position read at the start of a run"""

    position_id: uuid.UUID
    principal: int
    market_key: str
    market_name: str
    asset: str
    rate_cap_bps: Optional[int]


class AccrualRecorder:
    """
    Records daily accrued and excess interest for every active position.

    Each position is written in its own transaction; a crash mid-run leaves a
    partial day that the next run completes, since (position, date) is unique.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        rate_source: RateSource,
        clock: Callable[[], datetime] = utc_now,
        rate_timeout: float | None = None,
        max_rate_bps: int | None = None,
    ):
        self.session_factory = session_factory
        self.rate_source = rate_source
        self.clock = clock
        # Covers every client attempt plus its backoff sleeps
        self.rate_timeout = rate_timeout or (
            settings.http_timeout_seconds * settings.rate_source_max_retries
            + settings.rate_source_backoff_base * 2**settings.rate_source_max_retries
        )
        self.max_rate_bps = max_rate_bps or settings.max_rate_bps

    async def record(self, run_date: date | datetime | None = None) -> AccrualReport:
        """
        Accrue one day of interest for all active positions.

        Per-position failures are logged and collected in the report; only a
        storage failure while loading positions aborts the run.

        Raises:
            StorageUnavailableError: Active positions could not be loaded
        """
        accrual_date = to_accrual_date(run_date or self.clock())
        report = AccrualReport(date=accrual_date)
        logger.info("Starting daily interest accrual", extra={"date": accrual_date.isoformat()})

        positions = self._load_positions()
        rates: Dict[str, int | Exception] = {}

        for view in positions:
            try:
                result = await self._accrue_position(view, accrual_date, rates)
            except MissingRateCapError as e:
                self._record_error(report, view, "missing_cap", e)
                continue
            except (RateSourceError, asyncio.TimeoutError) as e:
                self._record_error(report, view, "rate_source", e)
                continue
            except (InvalidRateError, InvalidAmountError) as e:
                self._record_error(report, view, "invalid_rate", e)
                continue
            except SQLAlchemyError as e:
                self._record_error(report, view, "storage", e)
                continue
            except Exception as e:
                self._record_error(report, view, "unexpected", e)
                continue

            if result is None:
                report.positions_skipped += 1
                continue

            accrued, excess = result
            report.positions_processed += 1
            report.total_accrued += accrued
            report.total_excess += excess
            positions_accrued_counter.inc()
            if excess:
                excess_recorded_counter.labels(asset=view.asset).inc(excess)

        log_accrual_report(report)
        return report

    def _load_positions(self) -> list[_PositionView]:
        try:
            with self.session_factory() as db:
                return [
                    _PositionView(
                        position_id=p.id,
                        principal=p.principal,
                        market_key=p.market.market_id,
                        market_name=p.market.name,
                        asset=p.market.loan_asset,
                        rate_cap_bps=p.market.rate_cap_bps,
                    )
                    for p in PositionRepository(db).list_active()
                ]
        except SQLAlchemyError as e:
            logger.error("Cannot load active positions", extra={"step": "load_positions", "reason": str(e)})
            raise StorageUnavailableError(f"Cannot load active positions: {e}") from e

    async def _accrue_position(
        self,
        view: _PositionView,
        accrual_date: date,
        rates: Dict[str, int | Exception],
    ) -> Optional[Tuple[int, int]]:
        """Write today's accrual; None when the row already exists"""
        if view.rate_cap_bps is None:
            raise MissingRateCapError(f"No rate cap configured for market {view.market_name}")

        with self.session_factory() as db:
            if AccrualRepository(db).exists(view.position_id, accrual_date):
                return None

        # No session is held while waiting on the rate source
        actual_bps = await self._market_rate(view.market_key, rates)
        accrued = to_smallest_unit(daily_interest(view.principal, actual_bps, self.max_rate_bps))
        excess = to_smallest_unit(excess_interest(view.principal, actual_bps, view.rate_cap_bps, self.max_rate_bps))

        with self.session_factory() as db:
            repo = AccrualRepository(db)
            try:
                repo.create_accrual(
                    position_id=view.position_id,
                    accrual_date=accrual_date,
                    accrued_amount=accrued,
                    actual_rate_bps=actual_bps,
                    capped_rate_bps=view.rate_cap_bps,
                    excess_amount=excess,
                )
                db.commit()
            except IntegrityError:
                # Another run wrote this key first
                db.rollback()
                return None

        logger.debug(
            "Accrued position",
            extra={
                "position_id": str(view.position_id),
                "market_id": view.market_key,
                "principal": str(view.principal),
                "actual_rate_bps": actual_bps,
                "cap_rate_bps": view.rate_cap_bps,
                "excess": str(excess),
            },
        )
        return accrued, excess

    async def _market_rate(self, market_key: str, rates: Dict[str, int | Exception]) -> int:
        """Rate lookup shared by all positions of a market within one run"""
        if market_key not in rates:
            try:
                rates[market_key] = await asyncio.wait_for(
                    self.rate_source.get_market_rate(market_key), timeout=self.rate_timeout
                )
            except asyncio.TimeoutError as e:
                rates[market_key] = RateSourceError(f"Rate lookup for {market_key} timed out after {self.rate_timeout}s")
                raise rates[market_key] from e

        cached = rates[market_key]
        if isinstance(cached, Exception):
            raise cached
        return cached

    @staticmethod
    def _record_error(report: AccrualReport, view: _PositionView, reason: str, error: Exception) -> None:
        message = f"Failed to accrue position {view.position_id} ({view.market_name}): {error}"
        report.errors.append(message)
        accrual_errors_counter.labels(reason=reason).inc()
        logger.error(
            message,
            extra={
                "position_id": str(view.position_id),
                "market_id": view.market_key,
                "step": "accrue_position",
                "reason": reason,
            },
        )
