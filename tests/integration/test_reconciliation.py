"""Integration tests for pending settlement reconciliation"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from capguard.domain.exceptions import ChainRPCError
from capguard.domain.models import Receipt
from capguard.infrastructure.database.models import Settlement
from capguard.services.reconciliation import SettlementReconciler

pytestmark = pytest.mark.integration

ALICE = "0xA11CE00000000000000000000000000000000001"
HASH_A = "0x" + "aa" * 32
HASH_B = "0x" + "bb" * 32


@pytest.fixture
def pending_rows(db: Session, weth_market, make_position):
    """Two rows sharing HASH_A and one row on HASH_B, all pending"""
    p1 = make_position(weth_market, ALICE, 1_000_000)
    p2 = make_position(weth_market, ALICE, 500_000)
    rows = [
        Settlement(position_id=p1.id, date=date(2026, 3, 14), amount=100, tx_hash=HASH_A, status="pending", attempts=1),
        Settlement(position_id=p2.id, date=date(2026, 3, 14), amount=50, tx_hash=HASH_A, status="pending", attempts=1),
        Settlement(position_id=p1.id, date=date(2026, 3, 15), amount=70, tx_hash=HASH_B, status="pending", attempts=1),
    ]
    db.add_all(rows)
    db.commit()
    return rows


def statuses(db: Session) -> dict:
    db.expire_all()
    return {(r.tx_hash, r.amount): r.status for r in db.query(Settlement).all()}


async def test_confirmed_and_reverted_hashes_resolved(session_factory, db: Session, pending_rows, chain):
    chain.get_receipt.side_effect = lambda tx_hash: Receipt(tx_hash, tx_hash == HASH_A, 48_000)

    report = await SettlementReconciler(session_factory, chain).run()

    assert report.checked == 2
    assert report.processed == 1
    assert report.failed == 1
    assert statuses(db) == {(HASH_A, 100): "processed", (HASH_A, 50): "processed", (HASH_B, 70): "failed"}
    chain.send_transfer.assert_not_called()


async def test_unknown_receipt_stays_pending(session_factory, db: Session, pending_rows, chain):
    chain.get_receipt.return_value = None

    report = await SettlementReconciler(session_factory, chain).run()

    assert report.still_pending == 2
    assert report.errors == []
    assert set(statuses(db).values()) == {"pending"}


async def test_lookup_error_reported(session_factory, db: Session, pending_rows, chain):
    chain.get_receipt.side_effect = ChainRPCError("rpc down")

    report = await SettlementReconciler(session_factory, chain).run()

    assert len(report.errors) == 2
    assert set(statuses(db).values()) == {"pending"}


async def test_nothing_pending(session_factory, chain):
    report = await SettlementReconciler(session_factory, chain).run()

    assert report.checked == 0
    chain.get_receipt.assert_not_called()


async def test_long_unconfirmed_transaction_escalated(session_factory, db: Session, weth_market, make_position, chain):
    position = make_position(weth_market, ALICE, 1_000_000)
    submitted = datetime(2026, 3, 15, 1, 0, tzinfo=timezone.utc)
    db.add_all(
        [
            Settlement(position_id=position.id, date=date(2026, 3, 14), amount=100, tx_hash=HASH_A,
                       status="pending", attempts=1, created_at=submitted),
            Settlement(position_id=position.id, date=date(2026, 3, 15), amount=70, tx_hash=HASH_B,
                       status="pending", attempts=1, created_at=submitted + timedelta(hours=6)),
        ]
    )
    db.commit()
    chain.get_receipt.return_value = None
    clock = lambda: submitted + timedelta(hours=7)

    report = await SettlementReconciler(session_factory, chain, clock=clock, stale_after_hours=6).run()

    assert report.still_pending == 2
    assert report.stale_pending == 1
    assert len(report.errors) == 1
    assert HASH_A in report.errors[0]
    assert set(statuses(db).values()) == {"pending"}
    chain.send_transfer.assert_not_called()
