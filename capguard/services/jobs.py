"""Default job wiring for the service and the CLI"""

import logging
from typing import Any, Awaitable, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from capguard.config import Settings
from capguard.infrastructure.clients.chain import ChainClient, Web3ChainClient
from capguard.infrastructure.clients.rates import MorphoRateClient, RateSource
from capguard.infrastructure.database.session import SessionLocal
from capguard.services.accrual import AccrualRecorder
from capguard.services.disbursement import DisbursementEngine, SettlementRunner
from capguard.services.obligations import ObligationAggregator
from capguard.services.reconciliation import SettlementReconciler
from capguard.services.scheduler import DailySchedule, IntervalSchedule, Job, JobOrchestrator

logger = logging.getLogger(__name__)

POSITION_SYNC = "position-sync"
DAILY_ACCRUAL = "daily-accrual"
DAILY_SETTLEMENT = "daily-settlement"
SETTLEMENT_RECONCILE = "settlement-reconcile"


class PositionSyncer(Protocol):
    """Keeps the positions table in step with on-chain state"""

    def sync(self) -> Awaitable[Any]: ...


def build_orchestrator(
    settings: Settings,
    session_factory: sessionmaker,
    rate_source: RateSource,
    chain_client: ChainClient,
    position_syncer: Optional[PositionSyncer] = None,
) -> JobOrchestrator:
    """Register the standard jobs with cadences taken from settings"""
    settings.validate_signer()

    recorder = AccrualRecorder(session_factory, rate_source, max_rate_bps=settings.max_rate_bps)
    engine = DisbursementEngine(
        chain_client,
        token_addresses=dict(settings.token_addresses),
        max_attempts=settings.max_transfer_attempts,
        retry_delay=settings.retry_delay_seconds,
        gas_price_multiplier=settings.gas_price_multiplier,
        gas_limit_buffer=settings.gas_limit_buffer,
        confirmation_timeout=settings.confirmation_timeout_seconds,
    )
    runner = SettlementRunner(
        session_factory,
        ObligationAggregator(session_factory),
        engine,
        max_workers=settings.disbursement_max_workers,
        enabled=settings.settlement_enabled,
    )
    reconciler = SettlementReconciler(session_factory, chain_client, stale_after_hours=settings.pending_alert_hours)

    orchestrator = JobOrchestrator()
    if position_syncer is not None:
        orchestrator.register(
            Job(POSITION_SYNC, IntervalSchedule(settings.position_sync_interval_minutes), position_syncer.sync)
        )
    orchestrator.register(Job(DAILY_ACCRUAL, DailySchedule(settings.accrual_hour_utc), recorder.record))
    orchestrator.register(Job(DAILY_SETTLEMENT, DailySchedule(settings.settlement_hour_utc), runner.run))
    orchestrator.register(
        Job(SETTLEMENT_RECONCILE, IntervalSchedule(settings.reconcile_interval_minutes), reconciler.run)
    )

    logger.info(
        "Jobs registered",
        extra={"jobs": [status.name for status in orchestrator.list_jobs()], "dry_run": not settings.settlement_enabled},
    )
    return orchestrator


def build_default_orchestrator(settings: Settings) -> JobOrchestrator:
    """Orchestrator over the configured database, Morpho API and RPC node"""
    return build_orchestrator(settings, SessionLocal, MorphoRateClient(), Web3ChainClient())
