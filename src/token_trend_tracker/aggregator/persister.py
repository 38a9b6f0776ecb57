"""Batch persistence of buffered transfers.

A flush drains the transfer buffer, resolves each distinct block height to
its timestamp once, registers assets seen for the first time and then
writes the whole batch in a single transaction.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_trend_tracker.aggregator.dead_letter import DeadLetterLog
from token_trend_tracker.aggregator.registry import AssetRegistry
from token_trend_tracker.chain.client import ChainClient, call_with_fallback
from token_trend_tracker.clock import Clock
from token_trend_tracker.ingest.buffer import TransferBuffer
from token_trend_tracker.ingest.models import TransferEvent
from token_trend_tracker.storage.database import transaction
from token_trend_tracker.storage.repos import AssetRepository, TransferDTO, TransferRepository

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0


class PersistenceError(Exception):
    """Raised when a transfer batch could not be committed."""


@dataclass
class FlushResult:
    """Outcome of one transfer flush."""

    drained: int = 0
    persisted: int = 0
    attempts: int = 0
    failed: bool = False
    dead_lettered: bool = False
    skipped: bool = False
    new_assets: int = 0


@dataclass
class PersisterStats:
    """Statistics for the transfer persister."""

    flushes: int = 0
    transfers_persisted: int = 0
    batches_failed: int = 0
    batches_dead_lettered: int = 0
    timestamp_fallbacks: int = 0
    last_error: str | None = None


class TransferPersister:
    """Drains the transfer buffer and commits it atomically.

    At most one flush runs at a time. Calling ``flush`` while one is in
    progress returns immediately; the events appended meanwhile are picked
    up by the next flush.
    """

    def __init__(
        self,
        buffer: TransferBuffer,
        registry: AssetRegistry,
        chain: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 1.0,
        dead_letter: DeadLetterLog | None = None,
    ) -> None:
        self._buffer = buffer
        self._registry = registry
        self._chain = chain
        self._session_factory = session_factory
        self._clock = clock
        self._call_timeout = call_timeout
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds
        self._dead_letter = dead_letter

        self._lock = asyncio.Lock()
        self._flush_requested = asyncio.Event()
        self.stats = PersisterStats()

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    def request_flush(self) -> None:
        """Ask the flush loop to run early. No-op while a flush is running."""
        if not self._lock.locked():
            self._flush_requested.set()

    async def wait_for_request(self, timeout: float) -> bool:
        """Wait until a flush is requested or ``timeout`` elapses.

        Returns:
            True if a flush was requested.
        """
        try:
            await asyncio.wait_for(self._flush_requested.wait(), timeout=timeout)
        except TimeoutError:
            return False
        finally:
            self._flush_requested.clear()
        return True

    async def flush(self) -> FlushResult:
        """Persist everything currently buffered."""
        if self._lock.locked():
            logger.debug("Transfer flush already in progress; skipping")
            return FlushResult(skipped=True)

        async with self._lock:
            events = self._buffer.drain_and_reset()
            if not events:
                return FlushResult()
            self.stats.flushes += 1
            return await self._persist(events)

    async def _resolve_timestamps(self, heights: set[int]) -> dict[int, int]:
        """Resolve each distinct block height once, concurrently."""
        now = self._clock.now()
        ordered = sorted(heights)
        resolved = await asyncio.gather(
            *(
                call_with_fallback(
                    self._chain.get_block_timestamp(h),
                    fallback=None,
                    timeout=self._call_timeout,
                    description=f"timestamp of block {h}",
                )
                for h in ordered
            )
        )
        timestamps: dict[int, int] = {}
        for height, ts in zip(ordered, resolved, strict=True):
            if ts is None:
                self.stats.timestamp_fallbacks += 1
                logger.warning("Using flush time %d for block %d", now, height)
                ts = now
            timestamps[height] = int(ts)
        return timestamps

    async def _commit(self, rows: list[TransferDTO], activity: dict[str, int], discovered_at: int) -> int:
        """Register unknown assets, then insert the batch in one transaction."""
        try:
            unknown = [asset_id for asset_id in activity if self._registry.lookup(asset_id) is None]
            new_assets = await self._registry.register_batch(unknown, discovered_at) if unknown else []

            async with transaction(self._session_factory) as session:
                await TransferRepository(session).insert_many(rows)
                await AssetRepository(session).touch_last_updated(activity)
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e
        return len(new_assets)

    async def _persist(self, events: list[TransferEvent]) -> FlushResult:
        result = FlushResult(drained=len(events))
        timestamps = await self._resolve_timestamps({e.block_number for e in events})

        rows = [
            TransferDTO(
                asset_id=e.asset_id,
                sender=e.sender,
                recipient=e.recipient,
                amount=e.amount,
                timestamp=timestamps[e.block_number],
                block_number=e.block_number,
                tx_hash=e.tx_hash,
                log_index=e.log_index,
            )
            for e in events
        ]

        # Latest timestamp seen per asset, in first-seen order.
        activity: dict[str, int] = {}
        for row in rows:
            activity[row.asset_id] = max(activity.get(row.asset_id, row.timestamp), row.timestamp)
        discovered_at = min(timestamps.values())

        delay = self._retry_backoff
        last_error = ""
        for attempt in range(self._retry_attempts + 1):
            result.attempts = attempt + 1
            try:
                result.new_assets = await self._commit(rows, activity, discovered_at)
            except PersistenceError as e:
                last_error = str(e)
                logger.error(
                    "Transfer batch of %d rolled back (attempt %d/%d): %s",
                    len(rows),
                    attempt + 1,
                    self._retry_attempts + 1,
                    e,
                )
                if attempt < self._retry_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
                continue

            for asset_id, ts in activity.items():
                self._registry.record_activity(asset_id, ts)
            result.persisted = len(rows)
            self.stats.transfers_persisted += len(rows)
            logger.info(
                "Persisted %d transfers across %d assets (%d new)",
                len(rows),
                len(activity),
                result.new_assets,
            )
            return result

        result.failed = True
        self.stats.batches_failed += 1
        self.stats.last_error = last_error

        if self._dead_letter is not None:
            try:
                await self._dead_letter.write(rows, reason=last_error, failed_at=self._clock.now())
                result.dead_lettered = True
                self.stats.batches_dead_lettered += 1
            except OSError as e:
                logger.error("Failed to dead-letter batch of %d transfers: %s", len(rows), e)
        else:
            logger.error("Dropped transfer batch of %d after %d attempts", len(rows), result.attempts)
        return result
