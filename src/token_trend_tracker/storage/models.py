"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked assets, the append-only
transfer history, per-holder balances and per-asset trend snapshots.

Monetary values (supplies, amounts, balances) are stored as decimal strings
so uint256 quantities survive every dialect without precision loss. Times are
epoch seconds, matching block timestamps.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 max is 78 decimal digits.
AMOUNT_LENGTH = 80


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AssetModel(Base):
    """SQLAlchemy model for tracked token contracts."""

    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(42), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    total_supply: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    first_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_assets_last_updated", "last_updated"),)


class TransferModel(Base):
    """Append-only transfer history (one row per observed Transfer log)."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[str] = mapped_column(String(42), ForeignKey("assets.id"), nullable=False)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_transfers_asset_ts", "asset_id", "timestamp"),
        Index("idx_transfers_ts", "timestamp"),
    )


class HolderBalanceModel(Base):
    """Latest known balance of a holder for one asset."""

    __tablename__ = "holder_balances"

    holder: Mapped[str] = mapped_column(String(42), primary_key=True)
    asset_id: Mapped[str] = mapped_column(String(42), ForeignKey("assets.id"), primary_key=True)
    balance: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_holder_balances_asset", "asset_id", "last_updated"),)


class TrendSnapshotModel(Base):
    """Most recent trend computation for an asset (fully replaced on update)."""

    __tablename__ = "trend_snapshots"

    asset_id: Mapped[str] = mapped_column(String(42), ForeignKey("assets.id"), primary_key=True)
    velocity: Mapped[float] = mapped_column(Float, nullable=False)
    unique_holders: Mapped[int] = mapped_column(Integer, nullable=False)
    large_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    growth_rate: Mapped[float] = mapped_column(Float, nullable=False)
    whale_concentration: Mapped[float] = mapped_column(Float, nullable=False)
    trend_score: Mapped[float] = mapped_column(Float, nullable=False)
    last_calculated: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_trend_snapshots_score", "trend_score"),
        Index("idx_trend_snapshots_last_calculated", "last_calculated"),
    )
