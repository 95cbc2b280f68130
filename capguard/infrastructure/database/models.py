"""SQLAlchemy ORM models for markets, positions and the settlement ledger"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class TokenAmount(TypeDecorator):
    """
    Integer token amount in the asset's smallest unit.

    NUMERIC(78, 0) holds the full uint256 range on PostgreSQL. SQLite (tests
    only) falls back to BIGINT. Python code always sees int.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(78, 0))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return int(value)
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Market(Base):
    """Lending pool with its contractual rate cap"""

    __tablename__ = "markets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    market_id = Column(Text, nullable=False, unique=True)  # on-chain unique key
    name = Column(Text, nullable=False)
    collateral_asset = Column(Text, nullable=False)
    loan_asset = Column(Text, nullable=False)  # settlement asset symbol
    rate_cap_bps = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    positions = relationship("Position", back_populates="market")


class Borrower(Base):
    """On-chain borrower address"""

    __tablename__ = "borrowers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    address = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    positions = relationship("Position", back_populates="borrower")


class Position(Base):
    """Borrower's open debt in one market, maintained by position sync"""

    __tablename__ = "positions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    borrower_id = Column(Uuid, ForeignKey("borrowers.id"), nullable=False)
    market_id = Column(Uuid, ForeignKey("markets.id"), nullable=False)
    principal = Column(TokenAmount, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    opened_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at = Column(DateTime(timezone=True), nullable=True)

    borrower = relationship("Borrower", back_populates="positions")
    market = relationship("Market", back_populates="positions")


class InterestAccrual(Base):
    """One day of interest for one position; immutable once written"""

    __tablename__ = "interest_accruals"
    __table_args__ = (
        UniqueConstraint("position_id", "date", name="uq_interest_accruals_position_date"),
        Index(
            "ix_interest_accruals_excess",
            "excess_amount",
            postgresql_where=text("excess_amount > 0"),
            sqlite_where=text("excess_amount > 0"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    position_id = Column(Uuid, ForeignKey("positions.id"), nullable=False)
    date = Column(Date, nullable=False)
    accrued_amount = Column(TokenAmount, nullable=False)
    actual_rate_bps = Column(Integer, nullable=False)
    capped_rate_bps = Column(Integer, nullable=False)
    excess_amount = Column(TokenAmount, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    position = relationship("Position")


class Settlement(Base):
    """On-chain refund of one position's excess for one accrual date"""

    __tablename__ = "settlements"
    __table_args__ = (
        # At most one pending/processed row per key; failed rows are history
        Index(
            "uq_settlements_active_position_date",
            "position_id",
            "date",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processed')"),
            sqlite_where=text("status IN ('pending', 'processed')"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    position_id = Column(Uuid, ForeignKey("positions.id"), nullable=False)
    date = Column(Date, nullable=False)
    amount = Column(TokenAmount, nullable=False)
    tx_hash = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="pending", index=True)
    gas_used = Column(BigInteger, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    position = relationship("Position")
