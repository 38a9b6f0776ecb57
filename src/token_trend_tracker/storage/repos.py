"""Repository pattern implementations for data access.

This module provides clean data access abstractions for assets, transfers,
holder balances and trend snapshots. Repositories never commit; callers own
the transaction boundary (see ``storage.database.transaction``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from token_trend_tracker.storage.models import (
    AssetModel,
    HolderBalanceModel,
    TransferModel,
    TrendSnapshotModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ZERO_BALANCE = "0"

# Rows per multi-row statement. asyncpg caps a statement at 32767 bind
# parameters; the widest chunked table binds seven columns per row.
MAX_ROWS_PER_STATEMENT = 1000


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _chunked(items: Sequence[Any], size: int = MAX_ROWS_PER_STATEMENT) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class AssetDTO:
    """Data transfer object for tracked assets."""

    id: str
    name: str
    symbol: str
    total_supply: str
    decimals: int
    first_seen: int
    last_updated: int

    @classmethod
    def from_model(cls, model: AssetModel) -> AssetDTO:
        return cls(
            id=model.id,
            name=model.name,
            symbol=model.symbol,
            total_supply=model.total_supply,
            decimals=model.decimals,
            first_seen=model.first_seen,
            last_updated=model.last_updated,
        )


@dataclass
class TransferDTO:
    """Data transfer object for persisted transfers."""

    asset_id: str
    sender: str
    recipient: str
    amount: str
    timestamp: int
    block_number: int
    tx_hash: str
    log_index: int = 0
    id: int | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            id=model.id,
            asset_id=model.asset_id,
            sender=model.sender,
            recipient=model.recipient,
            amount=model.amount,
            timestamp=model.timestamp,
            block_number=model.block_number,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
        )


@dataclass
class HolderBalanceDTO:
    """Data transfer object for holder balances."""

    holder: str
    asset_id: str
    balance: str
    last_updated: int

    @classmethod
    def from_model(cls, model: HolderBalanceModel) -> HolderBalanceDTO:
        return cls(
            holder=model.holder,
            asset_id=model.asset_id,
            balance=model.balance,
            last_updated=model.last_updated,
        )


@dataclass
class TrendSnapshotDTO:
    """Data transfer object for trend snapshots."""

    asset_id: str
    velocity: float
    unique_holders: int
    large_transactions: int
    growth_rate: float
    whale_concentration: float
    trend_score: float
    last_calculated: int

    @classmethod
    def from_model(cls, model: TrendSnapshotModel) -> TrendSnapshotDTO:
        return cls(
            asset_id=model.asset_id,
            velocity=model.velocity,
            unique_holders=model.unique_holders,
            large_transactions=model.large_transactions,
            growth_rate=model.growth_rate,
            whale_concentration=model.whale_concentration,
            trend_score=model.trend_score,
            last_calculated=model.last_calculated,
        )


@dataclass
class TrendingAssetDTO:
    """An asset joined with its current trend snapshot."""

    asset: AssetDTO
    trend: TrendSnapshotDTO


class AssetRepository:
    """Repository for tracked assets."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, asset_id: str) -> AssetDTO | None:
        result = await self.session.execute(
            select(AssetModel).where(AssetModel.id == asset_id.lower())
        )
        model = result.scalar_one_or_none()
        return AssetDTO.from_model(model) if model else None

    async def get_many(self, asset_ids: Iterable[str]) -> dict[str, AssetDTO]:
        normalized = sorted({a.lower() for a in asset_ids})
        found: dict[str, AssetDTO] = {}
        for chunk in _chunked(normalized):
            result = await self.session.execute(
                select(AssetModel).where(AssetModel.id.in_(chunk))
            )
            found.update((m.id, AssetDTO.from_model(m)) for m in result.scalars().all())
        return found

    async def list_all(self) -> list[AssetDTO]:
        result = await self.session.execute(select(AssetModel))
        return [AssetDTO.from_model(m) for m in result.scalars().all()]

    async def insert_if_absent(self, dtos: Sequence[AssetDTO]) -> set[str]:
        """Insert assets, leaving existing rows untouched (first writer wins).

        Returns:
            Ids of the rows this call actually inserted.
        """
        if not dtos:
            return set()
        rows = [
            {
                "id": dto.id.lower(),
                "name": dto.name,
                "symbol": dto.symbol,
                "total_supply": dto.total_supply,
                "decimals": dto.decimals,
                "first_seen": dto.first_seen,
                "last_updated": dto.last_updated,
            }
            for dto in dtos
        ]
        inserted: set[str] = set()
        for chunk in _chunked(rows):
            stmt = _dialect_insert(self.session, AssetModel).values(list(chunk))
            stmt = stmt.on_conflict_do_nothing(index_elements=["id"]).returning(AssetModel.id)
            result = await self.session.execute(stmt)
            inserted.update(result.scalars().all())
        await self.session.flush()
        return inserted

    async def touch_last_updated(self, activity: dict[str, int]) -> None:
        """Advance ``last_updated`` per asset; never moves it backwards."""
        for asset_id, ts in sorted(activity.items()):
            await self.session.execute(
                update(AssetModel)
                .where((AssetModel.id == asset_id.lower()) & (AssetModel.last_updated < ts))
                .values(last_updated=ts)
            )
        await self.session.flush()

    async def list_due_for_trend(self, *, cutoff: int, limit: int) -> list[AssetDTO]:
        """Assets never scored, or last scored strictly before ``cutoff``.

        Most recently active assets come first.
        """
        stmt = (
            select(AssetModel)
            .outerjoin(TrendSnapshotModel, TrendSnapshotModel.asset_id == AssetModel.id)
            .where(
                TrendSnapshotModel.asset_id.is_(None)
                | (TrendSnapshotModel.last_calculated < cutoff)
            )
            .order_by(AssetModel.last_updated.desc(), AssetModel.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [AssetDTO.from_model(m) for m in result.scalars().all()]


class TransferRepository:
    """Repository for the append-only transfer history."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_many(self, dtos: Sequence[TransferDTO]) -> int:
        """Insert transfers in the given order.

        Returns:
            Number of rows inserted.
        """
        if not dtos:
            return 0
        rows = [
            {
                "asset_id": dto.asset_id.lower(),
                "sender": dto.sender.lower(),
                "recipient": dto.recipient.lower(),
                "amount": dto.amount,
                "timestamp": dto.timestamp,
                "block_number": dto.block_number,
                "tx_hash": dto.tx_hash.lower(),
                "log_index": dto.log_index,
            }
            for dto in dtos
        ]
        await self.session.execute(sa.insert(TransferModel), rows)
        await self.session.flush()
        return len(rows)

    async def list_amounts_in_window(self, asset_id: str, *, since: int) -> list[str]:
        """Amounts of every transfer for ``asset_id`` strictly after ``since``."""
        result = await self.session.execute(
            select(TransferModel.amount).where(
                (TransferModel.asset_id == asset_id.lower()) & (TransferModel.timestamp > since)
            )
        )
        return [row[0] for row in result.all()]

    async def list_recent(self, *, limit: int = 50, asset_id: str | None = None) -> list[TransferDTO]:
        """Most recent transfers, newest first."""
        stmt = select(TransferModel)
        if asset_id is not None:
            stmt = stmt.where(TransferModel.asset_id == asset_id.lower())
        stmt = stmt.order_by(TransferModel.timestamp.desc(), TransferModel.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [TransferDTO.from_model(m) for m in result.scalars().all()]


class HolderBalanceRepository:
    """Repository for per-holder balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, asset_id: str, holders: Iterable[str]) -> dict[str, HolderBalanceDTO]:
        normalized = sorted({h.lower() for h in holders})
        found: dict[str, HolderBalanceDTO] = {}
        for chunk in _chunked(normalized):
            result = await self.session.execute(
                select(HolderBalanceModel).where(
                    (HolderBalanceModel.asset_id == asset_id.lower())
                    & (HolderBalanceModel.holder.in_(chunk))
                )
            )
            found.update((m.holder, HolderBalanceDTO.from_model(m)) for m in result.scalars().all())
        return found

    async def upsert_many(self, dtos: Sequence[HolderBalanceDTO]) -> None:
        """Upsert balances in statements of at most ``MAX_ROWS_PER_STATEMENT`` rows."""
        if not dtos:
            return
        rows = [
            {
                "holder": dto.holder.lower(),
                "asset_id": dto.asset_id.lower(),
                "balance": dto.balance,
                "last_updated": dto.last_updated,
            }
            for dto in dtos
        ]
        for chunk in _chunked(rows):
            stmt = _dialect_insert(self.session, HolderBalanceModel).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=["holder", "asset_id"],
                set_={
                    "balance": stmt.excluded.balance,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
            await self.session.execute(stmt)
        await self.session.flush()

    async def count_positive(self, asset_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(HolderBalanceModel)
            .where(
                (HolderBalanceModel.asset_id == asset_id.lower())
                & (HolderBalanceModel.balance != ZERO_BALANCE)
            )
        )
        return int(result.scalar_one())

    async def count_positive_updated_before(self, asset_id: str, *, before: int) -> int:
        """Positive-balance holders whose last refresh predates ``before``."""
        result = await self.session.execute(
            select(func.count())
            .select_from(HolderBalanceModel)
            .where(
                (HolderBalanceModel.asset_id == asset_id.lower())
                & (HolderBalanceModel.balance != ZERO_BALANCE)
                & (HolderBalanceModel.last_updated < before)
            )
        )
        return int(result.scalar_one())

    async def list_positive_balances(self, asset_id: str) -> list[str]:
        result = await self.session.execute(
            select(HolderBalanceModel.balance).where(
                (HolderBalanceModel.asset_id == asset_id.lower())
                & (HolderBalanceModel.balance != ZERO_BALANCE)
            )
        )
        return [row[0] for row in result.all()]


class TrendSnapshotRepository:
    """Repository for per-asset trend snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, asset_id: str) -> TrendSnapshotDTO | None:
        result = await self.session.execute(
            select(TrendSnapshotModel).where(TrendSnapshotModel.asset_id == asset_id.lower())
        )
        model = result.scalar_one_or_none()
        return TrendSnapshotDTO.from_model(model) if model else None

    async def upsert(self, dto: TrendSnapshotDTO) -> None:
        """Replace the snapshot unless the stored one was calculated later."""
        values = {
            "asset_id": dto.asset_id.lower(),
            "velocity": dto.velocity,
            "unique_holders": dto.unique_holders,
            "large_transactions": dto.large_transactions,
            "growth_rate": dto.growth_rate,
            "whale_concentration": dto.whale_concentration,
            "trend_score": dto.trend_score,
            "last_calculated": dto.last_calculated,
        }
        stmt = _dialect_insert(self.session, TrendSnapshotModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["asset_id"],
            set_={
                "velocity": stmt.excluded.velocity,
                "unique_holders": stmt.excluded.unique_holders,
                "large_transactions": stmt.excluded.large_transactions,
                "growth_rate": stmt.excluded.growth_rate,
                "whale_concentration": stmt.excluded.whale_concentration,
                "trend_score": stmt.excluded.trend_score,
                "last_calculated": stmt.excluded.last_calculated,
            },
            where=TrendSnapshotModel.last_calculated <= stmt.excluded.last_calculated,
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_trending(self, *, limit: int = 10) -> list[TrendingAssetDTO]:
        """Assets ordered by trend score, highest first."""
        result = await self.session.execute(
            select(AssetModel, TrendSnapshotModel)
            .join(TrendSnapshotModel, TrendSnapshotModel.asset_id == AssetModel.id)
            .order_by(TrendSnapshotModel.trend_score.desc(), AssetModel.id.asc())
            .limit(limit)
        )
        return [
            TrendingAssetDTO(
                asset=AssetDTO.from_model(asset),
                trend=TrendSnapshotDTO.from_model(trend),
            )
            for asset, trend in result.all()
        ]
