"""Unit tests for obligation batching"""

import uuid
from datetime import date

from capguard.domain.models import AccrualCandidate, AccrualKey
from capguard.domain.obligations import build_obligation_batches

ALICE = "0xA11CE00000000000000000000000000000000001"
BOB = "0xB0B0000000000000000000000000000000000002"


def candidate(position_id, day, excess, address=ALICE, asset="WETH", market="wstETH/WETH"):
    return AccrualCandidate(
        position_id=position_id,
        date=day,
        excess_amount=excess,
        borrower_address=address,
        settlement_asset=asset,
        market_name=market,
    )


def test_positions_of_one_borrower_combine_into_one_batch():
    """P1 excess 100 + P2 excess 50 for the same borrower and asset -> one transfer of 150"""
    p1, p2 = uuid.uuid4(), uuid.uuid4()
    day = date(2026, 3, 14)

    batches = build_obligation_batches(
        [candidate(p1, day, 100), candidate(p2, day, 50, market="cbBTC/WETH")],
        settled_keys=set(),
    )

    assert len(batches) == 1
    batch = batches[0]
    assert batch.total_amount == 150
    assert {c.position_id for c in batch.contributions} == {p1, p2}
    assert batch.market_names == ["cbBTC/WETH", "wstETH/WETH"]


def test_settled_keys_are_excluded():
    p1 = uuid.uuid4()
    day1, day2 = date(2026, 3, 13), date(2026, 3, 14)

    batches = build_obligation_batches(
        [candidate(p1, day1, 100), candidate(p1, day2, 40)],
        settled_keys={AccrualKey(p1, day1)},
    )

    assert len(batches) == 1
    assert batches[0].total_amount == 40
    assert batches[0].keys == [AccrualKey(p1, day2)]


def test_everything_settled_yields_no_batches():
    p1 = uuid.uuid4()
    day = date(2026, 3, 14)

    assert build_obligation_batches([candidate(p1, day, 100)], {AccrualKey(p1, day)}) == []


def test_zero_excess_is_dropped():
    assert build_obligation_batches([candidate(uuid.uuid4(), date(2026, 3, 14), 0)], set()) == []


def test_grouping_by_asset_and_address_case():
    """Addresses compare case-insensitively; different assets never share a batch"""
    day = date(2026, 3, 14)
    batches = build_obligation_batches(
        [
            candidate(uuid.uuid4(), day, 10),
            candidate(uuid.uuid4(), day, 20, address=ALICE.lower()),
            candidate(uuid.uuid4(), day, 5, asset="USDC", market="WETH/USDC"),
        ],
        set(),
    )

    assert [(b.asset, b.total_amount) for b in batches] == [("USDC", 5), ("WETH", 30)]


def test_deterministic_order():
    """Oldest obligation first, then address"""
    old, new = date(2026, 3, 10), date(2026, 3, 14)
    batches = build_obligation_batches(
        [
            candidate(uuid.uuid4(), new, 10, address=ALICE),
            candidate(uuid.uuid4(), new, 10, address=BOB),
            candidate(uuid.uuid4(), old, 10, address=BOB, asset="USDC"),
        ],
        set(),
    )

    assert [(b.borrower_address, b.asset) for b in batches] == [(BOB, "USDC"), (ALICE, "WETH"), (BOB, "WETH")]


def test_contributions_sorted_by_date():
    p1 = uuid.uuid4()
    batches = build_obligation_batches(
        [candidate(p1, date(2026, 3, 14), 1), candidate(p1, date(2026, 3, 12), 2)],
        set(),
    )

    assert [c.date for c in batches[0].contributions] == [date(2026, 3, 12), date(2026, 3, 14)]
