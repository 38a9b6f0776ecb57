"""Tests for the trend engine."""

import asyncio

import pytest

from token_trend_tracker.storage.database import transaction
from token_trend_tracker.storage.repos import (
    AssetDTO,
    AssetRepository,
    HolderBalanceDTO,
    HolderBalanceRepository,
    TransferDTO,
    TransferRepository,
    TrendSnapshotDTO,
    TrendSnapshotRepository,
)
from token_trend_tracker.trends.engine import TrendEngine

DAY = 86_400
TOKEN = "0x" + "a0" * 20
OTHER_TOKEN = "0x" + "b1" * 20
THIRD_TOKEN = "0x" + "c2" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
CAROL = "0x" + "33" * 20
WHOLE = 10**18


def _asset(asset_id: str, last_updated: int, total_supply: int = 1_000 * WHOLE) -> AssetDTO:
    return AssetDTO(
        id=asset_id,
        name="Token",
        symbol="TKN",
        total_supply=str(total_supply),
        decimals=18,
        first_seen=last_updated,
        last_updated=last_updated,
    )


def _snapshot(asset_id: str, last_calculated: int) -> TrendSnapshotDTO:
    return TrendSnapshotDTO(
        asset_id=asset_id,
        velocity=0.0,
        unique_holders=0,
        large_transactions=0,
        growth_rate=0.0,
        whale_concentration=0.0,
        trend_score=-1.0,
        last_calculated=last_calculated,
    )


def _transfer(asset_id: str, amount: int, ts: int) -> TransferDTO:
    return TransferDTO(
        asset_id=asset_id,
        sender=ALICE,
        recipient=BOB,
        amount=str(amount),
        timestamp=ts,
        block_number=1,
        tx_hash="0x" + "d" * 64,
    )


@pytest.fixture
def engine(session_factory, clock) -> TrendEngine:
    return TrendEngine(session_factory, clock=clock)


async def _snapshot_of(session_factory, asset_id: str):
    async with session_factory() as session:
        return await TrendSnapshotRepository(session).get(asset_id)


class TestTrendEngine:
    """Tests for TrendEngine."""

    @pytest.mark.asyncio
    async def test_computes_all_metrics(self, engine: TrendEngine, session_factory, clock) -> None:
        now = clock.now()
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent([_asset(TOKEN, now - 10)])
            await TransferRepository(session).insert_many(
                [_transfer(TOKEN, n, now - n) for n in range(1, 101)]
                # Exactly at the window start: excluded.
                + [_transfer(TOKEN, 10_000, now - DAY)]
            )
            await HolderBalanceRepository(session).upsert_many(
                [
                    HolderBalanceDTO(ALICE, TOKEN, str(600 * WHOLE), now - DAY - 100),
                    HolderBalanceDTO(BOB, TOKEN, str(300 * WHOLE), now - 10),
                    HolderBalanceDTO(CAROL, TOKEN, "0", now - 2 * DAY),
                ]
            )

        result = await engine.run_cycle()

        assert result.computed == [TOKEN]
        assert result.failed == {}
        snapshot = await _snapshot_of(session_factory, TOKEN)
        assert snapshot.velocity == pytest.approx(10.0)
        assert snapshot.large_transactions == 11
        assert snapshot.unique_holders == 2
        assert snapshot.growth_rate == pytest.approx(100.0)
        assert snapshot.whale_concentration == pytest.approx(90.0)
        # 3 + 0.004 + 30 + 2.2 - 0.5
        assert snapshot.trend_score == pytest.approx(34.704)
        assert snapshot.last_calculated == now

    @pytest.mark.asyncio
    async def test_empty_asset_scores_zero(self, engine: TrendEngine, session_factory, clock) -> None:
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent([_asset(TOKEN, clock.now(), total_supply=0)])

        await engine.run_cycle()

        snapshot = await _snapshot_of(session_factory, TOKEN)
        assert snapshot.velocity == 0.0
        assert snapshot.large_transactions == 0
        assert snapshot.growth_rate == 0.0
        assert snapshot.whale_concentration == 0.0
        assert snapshot.trend_score == 0.0

    @pytest.mark.asyncio
    async def test_cooldown(self, engine: TrendEngine, session_factory, clock) -> None:
        now = clock.now()
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent(
                [_asset(TOKEN, now), _asset(OTHER_TOKEN, now), _asset(THIRD_TOKEN, now)]
            )
            snapshots = TrendSnapshotRepository(session)
            await snapshots.upsert(_snapshot(TOKEN, now - 30 * 60))
            await snapshots.upsert(_snapshot(OTHER_TOKEN, now - 61 * 60))

        result = await engine.run_cycle()

        assert sorted(result.computed) == sorted([OTHER_TOKEN, THIRD_TOKEN])
        assert (await _snapshot_of(session_factory, TOKEN)).last_calculated == now - 30 * 60
        assert (await _snapshot_of(session_factory, OTHER_TOKEN)).last_calculated == now

    @pytest.mark.asyncio
    async def test_recently_scored_assets_wait_for_cooldown(
        self, engine: TrendEngine, session_factory, clock
    ) -> None:
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent([_asset(TOKEN, clock.now())])

        assert (await engine.run_cycle()).computed == [TOKEN]

        clock.advance(30 * 60)
        assert (await engine.run_cycle()).computed == []

        clock.advance(31 * 60)
        assert (await engine.run_cycle()).computed == [TOKEN]

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, engine: TrendEngine, session_factory, clock, monkeypatch) -> None:
        now = clock.now()
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent(
                [_asset(TOKEN, now), _asset(OTHER_TOKEN, now - 1)]
            )

        original = engine.compute

        async def compute(asset, at):
            if asset.id == TOKEN:
                raise RuntimeError("bad supply")
            return await original(asset, at)

        monkeypatch.setattr(engine, "compute", compute)

        result = await engine.run_cycle()

        assert result.computed == [OTHER_TOKEN]
        assert "bad supply" in result.failed[TOKEN]
        assert await _snapshot_of(session_factory, TOKEN) is None
        assert engine.stats.trends_failed == 1

    @pytest.mark.asyncio
    async def test_cycle_is_capped_and_prefers_recent_activity(self, session_factory, clock) -> None:
        now = clock.now()
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent(
                [_asset(TOKEN, now - 100), _asset(OTHER_TOKEN, now), _asset(THIRD_TOKEN, now - 50)]
            )
        engine = TrendEngine(session_factory, clock=clock, group_size=1, max_assets_per_cycle=2)

        result = await engine.run_cycle()

        assert result.selected == 2
        assert result.computed == [OTHER_TOKEN, THIRD_TOKEN]

    def test_rejects_empty_groups(self, session_factory, clock) -> None:
        with pytest.raises(ValueError):
            TrendEngine(session_factory, clock=clock, group_size=0)

    @pytest.mark.asyncio
    async def test_concurrent_cycle_is_skipped(
        self, engine: TrendEngine, session_factory, clock, monkeypatch
    ) -> None:
        async with transaction(session_factory) as session:
            await AssetRepository(session).insert_if_absent([_asset(TOKEN, clock.now())])

        original = engine.compute
        entered = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow_compute(asset, at):
            calls.append(asset.id)
            entered.set()
            await release.wait()
            return await original(asset, at)

        monkeypatch.setattr(engine, "compute", slow_compute)

        first = asyncio.create_task(engine.run_cycle())
        await asyncio.wait_for(entered.wait(), timeout=5.0)

        second = await engine.run_cycle()
        assert second.skipped is True
        assert second.selected == 0
        assert calls == [TOKEN]

        release.set()
        assert (await first).computed == [TOKEN]
        assert engine.stats.cycles == 1
