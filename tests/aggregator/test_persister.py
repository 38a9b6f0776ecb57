"""Tests for the transfer persister."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from token_trend_tracker.aggregator.dead_letter import DeadLetterLog
from token_trend_tracker.aggregator.persister import TransferPersister
from token_trend_tracker.aggregator.registry import AssetRegistry
from token_trend_tracker.chain.client import RPCError
from token_trend_tracker.ingest.buffer import TransferBuffer
from token_trend_tracker.ingest.models import TransferEvent
from token_trend_tracker.storage.repos import AssetRepository, TransferRepository

T0 = 1_700_000_000
TOKEN = "0x" + "a0" * 20
OTHER_TOKEN = "0x" + "b1" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


def _ts(height: int) -> int:
    # Matches the mocked chain in conftest.
    return T0 + height * 12


def _event(amount: int, block_number: int, *, asset_id: str = TOKEN, log_index: int = 0) -> TransferEvent:
    return TransferEvent(
        asset_id=asset_id,
        sender=ALICE,
        recipient=BOB,
        amount=str(amount),
        block_number=block_number,
        tx_hash="0x" + format(block_number, "064x"),
        log_index=log_index,
    )


@pytest.fixture
def buffer() -> TransferBuffer:
    return TransferBuffer()


@pytest.fixture
def registry(session_factory, mock_chain) -> AssetRegistry:
    return AssetRegistry(session_factory, mock_chain)


@pytest.fixture
def persister(buffer, registry, mock_chain, session_factory, clock) -> TransferPersister:
    return TransferPersister(
        buffer,
        registry,
        mock_chain,
        session_factory,
        clock=clock,
        retry_backoff_seconds=0,
    )


async def _stored_transfers(session_factory):
    async with session_factory() as session:
        return await TransferRepository(session).list_recent(limit=1000)


class TestTransferPersister:
    """Tests for TransferPersister."""

    @pytest.mark.asyncio
    async def test_empty_buffer_is_noop(self, persister: TransferPersister, mock_chain) -> None:
        result = await persister.flush()

        assert result.drained == 0
        assert result.persisted == 0
        mock_chain.get_block_timestamp.assert_not_called()

    @pytest.mark.asyncio
    async def test_each_block_height_resolved_once(
        self, persister: TransferPersister, buffer: TransferBuffer, mock_chain, session_factory
    ) -> None:
        for i, height in enumerate([5, 5, 6, 6, 7]):
            buffer.append(_event(i + 1, height, log_index=i))

        result = await persister.flush()

        assert result.persisted == 5
        assert mock_chain.get_block_timestamp.await_count == 3
        awaited = sorted(c.args[0] for c in mock_chain.get_block_timestamp.await_args_list)
        assert awaited == [5, 6, 7]

        stored = await _stored_transfers(session_factory)
        assert {(t.block_number, t.timestamp) for t in stored} == {(h, _ts(h)) for h in (5, 6, 7)}

    @pytest.mark.asyncio
    async def test_rows_inserted_in_arrival_order(
        self, persister: TransferPersister, buffer: TransferBuffer, session_factory
    ) -> None:
        for i, height in enumerate([9, 3, 6]):
            buffer.append(_event(i, height, log_index=i))

        await persister.flush()

        stored = sorted(await _stored_transfers(session_factory), key=lambda t: t.id)
        assert [t.amount for t in stored] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_unknown_assets_registered_at_earliest_timestamp(
        self, persister: TransferPersister, buffer: TransferBuffer, registry: AssetRegistry, session_factory
    ) -> None:
        buffer.append(_event(1, 10))
        buffer.append(_event(2, 4, asset_id=OTHER_TOKEN))
        buffer.append(_event(3, 20))

        result = await persister.flush()

        assert result.new_assets == 2
        async with session_factory() as session:
            assets = await AssetRepository(session).get_many([TOKEN, OTHER_TOKEN])
        assert assets[TOKEN].first_seen == _ts(4)
        assert assets[OTHER_TOKEN].first_seen == _ts(4)
        # last_updated advances to the latest transfer seen for each asset.
        assert assets[TOKEN].last_updated == _ts(20)
        assert assets[OTHER_TOKEN].last_updated == _ts(4)
        assert registry.lookup(TOKEN) == assets[TOKEN]

    @pytest.mark.asyncio
    async def test_timestamp_failure_falls_back_to_clock(
        self, persister: TransferPersister, buffer: TransferBuffer, mock_chain, clock, session_factory
    ) -> None:
        mock_chain.get_block_timestamp = AsyncMock(side_effect=RPCError("node down"))
        buffer.append(_event(1, 10))

        result = await persister.flush()

        assert result.persisted == 1
        assert persister.stats.timestamp_fallbacks == 1
        stored = await _stored_transfers(session_factory)
        assert stored[0].timestamp == clock.now()

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_no_transfers(
        self, persister: TransferPersister, buffer: TransferBuffer, session_factory, monkeypatch, caplog
    ) -> None:
        async def failing_touch(self, activity):
            raise RuntimeError("disk full")

        monkeypatch.setattr(AssetRepository, "touch_last_updated", failing_touch)
        for i in range(4):
            buffer.append(_event(i, 10 + i))

        with caplog.at_level("ERROR"):
            result = await persister.flush()

        assert result.failed is True
        assert result.persisted == 0
        assert persister.stats.batches_failed == 1
        assert "disk full" in persister.stats.last_error
        assert "rolled back" in caplog.text
        assert await _stored_transfers(session_factory) == []
        # The batch is not re-queued.
        assert len(buffer) == 0

    @pytest.mark.asyncio
    async def test_retry_recovers_transient_failure(
        self, buffer, registry, mock_chain, session_factory, clock, monkeypatch
    ) -> None:
        original = AssetRepository.touch_last_updated
        calls = {"n": 0}

        async def flaky_touch(self, activity):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("deadlock detected")
            return await original(self, activity)

        monkeypatch.setattr(AssetRepository, "touch_last_updated", flaky_touch)
        persister = TransferPersister(
            buffer,
            registry,
            mock_chain,
            session_factory,
            clock=clock,
            retry_attempts=2,
            retry_backoff_seconds=0,
        )
        buffer.append(_event(1, 10))
        buffer.append(_event(2, 11))

        result = await persister.flush()

        assert result.attempts == 2
        assert result.persisted == 2
        assert len(await _stored_transfers(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_exhausted_batch_is_dead_lettered(
        self, buffer, registry, mock_chain, session_factory, clock, monkeypatch, tmp_path
    ) -> None:
        async def failing_insert(self, dtos):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(TransferRepository, "insert_many", failing_insert)
        dead_letter = DeadLetterLog(tmp_path / "dead" / "transfers.jsonl")
        persister = TransferPersister(
            buffer,
            registry,
            mock_chain,
            session_factory,
            clock=clock,
            retry_attempts=1,
            retry_backoff_seconds=0,
            dead_letter=dead_letter,
        )
        buffer.append(_event(7, 10))
        buffer.append(_event(8, 11))

        result = await persister.flush()

        assert result.attempts == 2
        assert result.dead_lettered is True
        entries = list(dead_letter.read_entries())
        assert len(entries) == 1
        assert entries[0]["failed_at"] == clock.now()
        assert "connection reset" in entries[0]["reason"]
        assert [t["amount"] for t in entries[0]["transfers"]] == ["7", "8"]
        assert entries[0]["transfers"][0]["timestamp"] == _ts(10)

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_noop(
        self, persister: TransferPersister, buffer: TransferBuffer, mock_chain, session_factory
    ) -> None:
        release = asyncio.Event()

        async def slow_timestamp(height: int) -> int:
            await release.wait()
            return _ts(height)

        mock_chain.get_block_timestamp = AsyncMock(side_effect=slow_timestamp)
        buffer.append(_event(1, 10))

        first = asyncio.create_task(persister.flush())
        await asyncio.sleep(0)
        assert persister.is_flushing

        buffer.append(_event(2, 11))
        second = await persister.flush()
        assert second.skipped is True

        release.set()
        assert (await first).persisted == 1
        # The transfer appended during the first flush waits for the next one.
        assert len(buffer) == 1
        assert (await persister.flush()).persisted == 1
        assert len(await _stored_transfers(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_request_flush(self, persister: TransferPersister) -> None:
        assert await persister.wait_for_request(0.01) is False

        persister.request_flush()
        assert await persister.wait_for_request(1.0) is True
        # The request is consumed.
        assert await persister.wait_for_request(0.01) is False
