"""Integration tests for the default job wiring"""

from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr
from sqlalchemy.orm import Session

from capguard.config import Settings
from capguard.domain.exceptions import ConfigurationError
from capguard.infrastructure.database.models import InterestAccrual, Settlement
from capguard.services.jobs import (
    DAILY_ACCRUAL,
    DAILY_SETTLEMENT,
    POSITION_SYNC,
    SETTLEMENT_RECONCILE,
    build_orchestrator,
)

pytestmark = pytest.mark.integration

ALICE = "0xA11CE00000000000000000000000000000000001"


def make_settings(**overrides) -> Settings:
    values = {"database_url": "sqlite://", "retry_delay_seconds": 0, "confirmation_timeout_seconds": 1.0}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_default_jobs(session_factory, rate_source, chain):
    orchestrator = build_orchestrator(make_settings(), session_factory, rate_source, chain)

    schedules = {status.name: status.schedule for status in orchestrator.list_jobs()}
    assert schedules == {
        DAILY_ACCRUAL: "daily at 00:00 UTC",
        DAILY_SETTLEMENT: "daily at 01:00 UTC",
        SETTLEMENT_RECONCILE: "every 30 minutes",
    }


def test_position_sync_registered_when_provided(session_factory, rate_source, chain):
    syncer = AsyncMock()

    orchestrator = build_orchestrator(make_settings(), session_factory, rate_source, chain, position_syncer=syncer)

    assert orchestrator.get_status(POSITION_SYNC).schedule == "every 15 minutes"


def test_enabled_settlement_requires_key(session_factory, rate_source, chain):
    with pytest.raises(ConfigurationError):
        build_orchestrator(make_settings(settlement_enabled=True), session_factory, rate_source, chain)


async def test_accrue_then_settle(session_factory, db: Session, weth_market, make_position, rate_source, chain):
    make_position(weth_market, ALICE, 1_200_000)
    settings = make_settings(
        settlement_enabled=True,
        signer_private_key=SecretStr("0x" + "11" * 32),
        token_addresses={"WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619"},
    )
    orchestrator = build_orchestrator(settings, session_factory, rate_source, chain)

    accrual = await orchestrator.run_job(DAILY_ACCRUAL)
    settlement = await orchestrator.run_job(DAILY_SETTLEMENT)

    assert accrual.success and settlement.success
    assert settlement.report["total_disbursed"] == {"WETH": "269"}
    excess = db.query(InterestAccrual).one().excess_amount
    row = db.query(Settlement).one()
    assert (row.amount, row.status) == (excess, "processed")


async def test_dry_run_job_succeeds_without_writes(session_factory, db: Session, weth_market, make_position, rate_source, chain):
    make_position(weth_market, ALICE, 1_200_000)
    orchestrator = build_orchestrator(make_settings(), session_factory, rate_source, chain)

    await orchestrator.run_job(DAILY_ACCRUAL)
    result = await orchestrator.run_job(DAILY_SETTLEMENT)

    assert result.success
    assert result.report["dry_run"] is True
    assert db.query(Settlement).count() == 0
    chain.send_transfer.assert_not_called()
