"""Periodic trend recomputation.

Each cycle picks the assets whose snapshot is missing or older than the
cooldown, computes their metrics over the trailing window and replaces
their snapshots. Assets are processed in small concurrent groups; a
failure on one asset is recorded and does not affect the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_trend_tracker.clock import Clock
from token_trend_tracker.storage.database import transaction
from token_trend_tracker.storage.repos import (
    AssetDTO,
    AssetRepository,
    HolderBalanceRepository,
    TransferRepository,
    TrendSnapshotDTO,
    TrendSnapshotRepository,
)
from token_trend_tracker.trends import metrics
from token_trend_tracker.trends.metrics import TrendMetrics

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_COOLDOWN_SECONDS = 3600
DEFAULT_WINDOW_SECONDS = 86_400
DEFAULT_GROUP_SIZE = 10
DEFAULT_MAX_ASSETS_PER_CYCLE = 500


@dataclass
class TrendCycleResult:
    """Outcome of one recompute cycle."""

    started_at: int
    selected: int = 0
    computed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: bool = False


@dataclass
class TrendStats:
    """Statistics for the trend engine."""

    cycles: int = 0
    trends_computed: int = 0
    trends_failed: int = 0
    last_cycle_duration_seconds: float = 0.0
    last_error: str | None = None


class TrendEngine:
    """Recomputes per-asset trend snapshots.

    Example:
        ```python
        engine = TrendEngine(session_factory, clock=SystemClock())
        result = await engine.run_cycle()
        print(f"{len(result.computed)} assets scored")
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        group_size: int = DEFAULT_GROUP_SIZE,
        max_assets_per_cycle: int = DEFAULT_MAX_ASSETS_PER_CYCLE,
    ) -> None:
        if group_size < 1:
            raise ValueError("group_size must be >= 1")
        self._session_factory = session_factory
        self._clock = clock
        self._cooldown = cooldown_seconds
        self._window = window_seconds
        self._group_size = group_size
        self._max_assets = max_assets_per_cycle

        self._lock = asyncio.Lock()
        self.stats = TrendStats()

    async def compute(self, asset: AssetDTO, now: int) -> TrendMetrics:
        """Compute metrics for ``asset`` over the window ending at ``now``."""
        window_start = now - self._window

        async with self._session_factory() as session:
            transfers = TransferRepository(session)
            balances = HolderBalanceRepository(session)

            amounts = await transfers.list_amounts_in_window(asset.id, since=window_start)
            holders = await balances.count_positive(asset.id)
            baseline = await balances.count_positive_updated_before(asset.id, before=window_start)
            positive_balances = await balances.list_positive_balances(asset.id)

        return TrendMetrics(
            velocity=metrics.velocity(len(amounts), asset.total_supply, asset.decimals),
            unique_holders=holders,
            large_transactions=metrics.count_large_transactions(amounts),
            growth_rate=metrics.growth_rate(holders, baseline),
            whale_concentration=metrics.whale_concentration(positive_balances, asset.total_supply),
        )

    async def _compute_and_store(self, asset: AssetDTO, cycle_start: int) -> TrendSnapshotDTO:
        computed = await self.compute(asset, cycle_start)
        snapshot = TrendSnapshotDTO(
            asset_id=asset.id,
            velocity=computed.velocity,
            unique_holders=computed.unique_holders,
            large_transactions=computed.large_transactions,
            growth_rate=computed.growth_rate,
            whale_concentration=computed.whale_concentration,
            trend_score=computed.trend_score,
            last_calculated=cycle_start,
        )
        async with transaction(self._session_factory) as session:
            await TrendSnapshotRepository(session).upsert(snapshot)
        return snapshot

    async def run_cycle(self) -> TrendCycleResult:
        """Recompute every asset that is due. No-op while a cycle runs."""
        cycle_start = self._clock.now()
        if self._lock.locked():
            logger.debug("Trend cycle already in progress; skipping")
            return TrendCycleResult(started_at=cycle_start, skipped=True)

        async with self._lock:
            started = time.monotonic()
            result = TrendCycleResult(started_at=cycle_start)

            async with self._session_factory() as session:
                due = await AssetRepository(session).list_due_for_trend(
                    cutoff=cycle_start - self._cooldown,
                    limit=self._max_assets,
                )
            result.selected = len(due)

            for i in range(0, len(due), self._group_size):
                group = due[i : i + self._group_size]
                outcomes = await asyncio.gather(
                    *(self._compute_and_store(asset, cycle_start) for asset in group),
                    return_exceptions=True,
                )
                for asset, outcome in zip(group, outcomes, strict=True):
                    if isinstance(outcome, Exception):
                        result.failed[asset.id] = f"{type(outcome).__name__}: {outcome}"
                        logger.warning("Trend computation failed for %s: %s", asset.id, outcome)
                    elif isinstance(outcome, BaseException):
                        raise outcome
                    else:
                        result.computed.append(asset.id)

            self.stats.cycles += 1
            self.stats.trends_computed += len(result.computed)
            self.stats.trends_failed += len(result.failed)
            self.stats.last_cycle_duration_seconds = time.monotonic() - started
            if result.failed:
                self.stats.last_error = next(reversed(result.failed.values()))

            logger.info(
                "Trend cycle: %d due, %d computed, %d failed in %.2fs",
                result.selected,
                len(result.computed),
                len(result.failed),
                self.stats.last_cycle_duration_seconds,
            )
            return result
