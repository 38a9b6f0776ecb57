"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from token_trend_tracker.config import Settings
from token_trend_tracker.pipeline import Pipeline, PipelineState
from token_trend_tracker.storage.repos import (
    AssetRepository,
    HolderBalanceRepository,
    TransferRepository,
)

TOKEN = "0x" + "a0" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


@pytest.fixture
def make_settings(monkeypatch, database_url: str) -> Callable[..., Settings]:
    """Build Settings from the environment with fast loop intervals."""

    def _make(**env: str) -> Settings:
        monkeypatch.delenv("REDIS_URL", raising=False)
        values = {
            "DATABASE_URL": database_url,
            "INGEST_FLUSH_INTERVAL_SECONDS": "0.05",
            "INGEST_BATCH_SIZE": "1000",
            "BALANCE_FLUSH_INTERVAL_SECONDS": "0.05",
            "TREND_INTERVAL_SECONDS": "0.05",
        }
        values.update(env)
        for key, value in values.items():
            monkeypatch.setenv(key, value)
        return Settings()

    return _make


def _source(logs: list[dict]) -> Callable[[], object]:
    def factory():
        async def gen():
            for log in logs:
                yield log

        return gen()

    return factory


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestPipelineState:
    """Tests for pipeline state management."""

    def test_initial_state_is_stopped(self, make_settings) -> None:
        pipeline = Pipeline(make_settings())
        assert pipeline.state == PipelineState.STOPPED
        assert not pipeline.is_running

    def test_initial_stats(self, make_settings) -> None:
        stats = Pipeline(make_settings()).stats

        assert stats.started_at is None
        assert stats.events_received == 0
        assert stats.transfers_persisted == 0
        assert stats.errors == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_settings, async_engine, mock_chain, clock) -> None:
        pipeline = Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source([]))

        await pipeline.start()
        assert pipeline.state == PipelineState.RUNNING
        assert pipeline.stats.started_at is not None

        await pipeline.stop()
        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, make_settings, async_engine, mock_chain, clock) -> None:
        pipeline = Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source([]))
        await pipeline.start()
        try:
            with pytest.raises(RuntimeError):
                await pipeline.start()
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_failed_start_moves_to_error(self, make_settings, mock_chain, clock, tmp_path) -> None:
        settings = make_settings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        pipeline = Pipeline(settings, clock=clock, chain=mock_chain, log_source=_source([]))

        with pytest.raises(Exception):
            await pipeline.start()

        assert pipeline.state == PipelineState.ERROR
        assert pipeline.stats.last_error

    @pytest.mark.asyncio
    async def test_components_are_built_on_start(self, make_settings, mock_chain, clock) -> None:
        # No schema fixture: a fresh SQLite file gets its tables on start.
        pipeline = Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source([]))
        assert pipeline.trend_engine is None

        async with pipeline:
            assert pipeline.registry is not None
            assert pipeline.persister is not None
            assert pipeline.balances is not None
            assert pipeline.trend_engine is not None

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, make_settings, async_engine, mock_chain, clock) -> None:
        pipeline = Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source([]))

        task = asyncio.create_task(pipeline.run())
        await _wait_until(lambda: pipeline.is_running)
        pipeline.request_stop()
        await asyncio.wait_for(task, timeout=5.0)

        assert pipeline.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_context_manager(self, make_settings, async_engine, mock_chain, clock) -> None:
        async with Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source([])) as p:
            assert p.is_running
        assert p.state == PipelineState.STOPPED


class TestPipelineFlow:
    """End-to-end flow over SQLite with a mocked chain."""

    @pytest.mark.asyncio
    async def test_transfers_balances_and_trends(
        self, make_settings, async_engine, session_factory, mock_chain, clock, make_log
    ) -> None:
        mock_chain.get_token_balance = AsyncMock(return_value=10)
        logs = [make_log(amount=n, block_number=n, log_index=0) for n in range(1, 4)]
        pipeline = Pipeline(make_settings(), clock=clock, chain=mock_chain, log_source=_source(logs))

        async with pipeline:
            await _wait_until(lambda: pipeline.stats.transfers_persisted == 3)
            await _wait_until(lambda: pipeline.stats.balances_refreshed >= 2)
            await _wait_until(lambda: pipeline.stats.trends_computed >= 1)

        stats = pipeline.stats
        assert stats.events_received == 3
        assert stats.events_dropped == 0
        assert stats.batches_failed == 0

        async with session_factory() as session:
            assert len(await TransferRepository(session).list_recent(asset_id=TOKEN)) == 3
            assert (await AssetRepository(session).get(TOKEN)).name == "Test Token"
            balances = await HolderBalanceRepository(session).get_many(TOKEN, [ALICE, BOB])
        assert {h: b.balance for h, b in balances.items()} == {ALICE: "10", BOB: "10"}

    @pytest.mark.asyncio
    async def test_malformed_logs_are_counted(
        self, make_settings, async_engine, mock_chain, clock, make_log
    ) -> None:
        bad = make_log()
        bad["topics"] = bad["topics"][:1]
        pipeline = Pipeline(
            make_settings(), clock=clock, chain=mock_chain, log_source=_source([bad, make_log()])
        )

        async with pipeline:
            await _wait_until(lambda: pipeline.stats.events_received == 2)

        assert pipeline.stats.events_dropped == 1

    @pytest.mark.asyncio
    async def test_size_threshold_triggers_early_flush(
        self, make_settings, async_engine, mock_chain, clock, make_log
    ) -> None:
        settings = make_settings(INGEST_FLUSH_INTERVAL_SECONDS="60", INGEST_BATCH_SIZE="2")
        logs = [make_log(block_number=n) for n in range(1, 3)]
        pipeline = Pipeline(settings, clock=clock, chain=mock_chain, log_source=_source(logs))

        async with pipeline:
            await _wait_until(lambda: pipeline.stats.transfers_persisted == 2, timeout=2.0)

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining_transfers(
        self, make_settings, async_engine, session_factory, mock_chain, clock, make_log
    ) -> None:
        settings = make_settings(INGEST_FLUSH_INTERVAL_SECONDS="60")
        logs = [make_log(block_number=n) for n in range(1, 4)]
        pipeline = Pipeline(settings, clock=clock, chain=mock_chain, log_source=_source(logs))

        await pipeline.start()
        await _wait_until(lambda: pipeline.stats.events_received == 3)
        assert pipeline.stats.transfers_persisted == 0
        await pipeline.stop()

        async with session_factory() as session:
            assert len(await TransferRepository(session).list_recent()) == 3
