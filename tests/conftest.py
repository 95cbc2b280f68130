"""Pytest fixtures for testing"""

import os

# Settings are read at import time; point them at SQLite before any capguard import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SETTLEMENT_ENABLED"] = "false"
os.environ.pop("SIGNER_PRIVATE_KEY", None)

import uuid
from datetime import date
from typing import Callable, Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from capguard.domain.models import Receipt
from capguard.infrastructure.database.models import Base, Borrower, InterestAccrual, Market, Position
from capguard.infrastructure.database.session import build_engine

SIGNER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """Fresh SQLite database per test"""
    engine = build_engine(f"sqlite:///{tmp_path}/capguard.db")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def weth_market(db: Session) -> Market:
    """WETH-loan market capped at 10% APR"""
    market = Market(
        market_id="0xmarket-wsteth-weth",
        name="wstETH/WETH",
        collateral_asset="wstETH",
        loan_asset="WETH",
        rate_cap_bps=1000,
    )
    db.add(market)
    db.commit()
    return market


@pytest.fixture
def make_position(db: Session) -> Callable[..., Position]:
    """Factory for active positions; borrowers are created on first use"""

    def _make(market: Market, address: str, principal: int, active: bool = True) -> Position:
        borrower = db.query(Borrower).filter(Borrower.address == address).first()
        if borrower is None:
            borrower = Borrower(address=address)
            db.add(borrower)
            db.flush()
        position = Position(borrower_id=borrower.id, market_id=market.id, principal=principal, is_active=active)
        db.add(position)
        db.commit()
        return position

    return _make


@pytest.fixture
def make_accrual(db: Session) -> Callable[..., InterestAccrual]:
    """Insert an accrual row directly, bypassing the recorder"""

    def _make(position: Position, accrual_date: date, excess: int, accrued: Optional[int] = None) -> InterestAccrual:
        accrual = InterestAccrual(
            position_id=position.id,
            date=accrual_date,
            accrued_amount=accrued if accrued is not None else excess * 2,
            actual_rate_bps=1820,
            capped_rate_bps=1000,
            excess_amount=excess,
        )
        db.add(accrual)
        db.commit()
        return accrual

    return _make


@pytest.fixture
def rate_source() -> AsyncMock:
    """Rate source returning 18.2% APR for every market"""
    source = AsyncMock()
    source.get_market_rate.return_value = 1820
    return source


@pytest.fixture
def chain() -> MagicMock:
    """Chain client whose every call succeeds"""
    client = MagicMock()
    client.is_ready = True
    client.signer_address = SIGNER
    client.get_balance = AsyncMock(return_value=10**24)
    client.gas_price = AsyncMock(return_value=30 * 10**9)
    client.estimate_transfer_gas = AsyncMock(return_value=50_000)
    client.get_nonce = AsyncMock(return_value=7)
    client.send_transfer = AsyncMock(side_effect=lambda *args: f"0x{uuid.uuid4().hex}{uuid.uuid4().hex}")
    client.wait_for_receipt = AsyncMock(
        side_effect=lambda tx_hash, timeout: Receipt(tx_hash=tx_hash, success=True, gas_used=48_000, block_number=1)
    )
    client.is_broadcast = AsyncMock(return_value=False)
    client.get_receipt = AsyncMock(return_value=None)
    return client

