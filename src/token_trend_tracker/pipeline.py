"""Main pipeline orchestrator for Token Trend Tracker.

This module provides the Pipeline class that wires together the ingestion,
aggregation and trend components and runs their periodic loops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from token_trend_tracker.aggregator.balances import BalanceRefresher
from token_trend_tracker.aggregator.dead_letter import DeadLetterLog
from token_trend_tracker.aggregator.persister import TransferPersister
from token_trend_tracker.aggregator.registry import AssetRegistry
from token_trend_tracker.chain.client import ChainClient
from token_trend_tracker.chain.subscription import subscribe_transfer_logs
from token_trend_tracker.clock import Clock, SystemClock
from token_trend_tracker.config import Settings, get_settings
from token_trend_tracker.ingest.buffer import PendingBalanceSet, TransferBuffer
from token_trend_tracker.ingest.listener import TransferListener
from token_trend_tracker.storage.database import DatabaseManager
from token_trend_tracker.trends.engine import TrendEngine

logger = logging.getLogger(__name__)

# Raw log source: called once per (re)connection.
LogSourceFactory = Callable[[], AsyncIterable[Mapping[str, Any]]]

LISTENER_RECONNECT_DELAY_SECONDS = 5.0
STOP_GRACE_SECONDS = 30.0


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    events_received: int = 0
    events_dropped: int = 0
    transfers_persisted: int = 0
    batches_failed: int = 0
    balances_refreshed: int = 0
    trends_computed: int = 0
    errors: int = 0
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator for the Token Trend Tracker.

    Every component is owned by the pipeline instance; nothing is shared
    through module globals.

    Pipeline flow:
        Transfer logs → Listener → TransferBuffer / PendingBalanceSet
        → TransferPersister (interval or size threshold)
        → BalanceRefresher (interval) → TrendEngine (interval)

    Example:
        ```python
        from token_trend_tracker.config import get_settings
        from token_trend_tracker.pipeline import Pipeline

        settings = get_settings()
        pipeline = Pipeline(settings)

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        chain: ChainClient | None = None,
        log_source: LogSourceFactory | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            clock: Time source. Defaults to the system clock.
            chain: RPC client to use instead of building one from settings.
                The pipeline does not close an injected client.
            log_source: Factory for the raw log stream. Defaults to the
                WebSocket subscription at ``settings.chain.ws_url``.
        """
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._injected_chain = chain
        self._log_source = log_source or (lambda: subscribe_transfer_logs(self._settings.chain.ws_url))

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain: ChainClient | None = None
        self._registry: AssetRegistry | None = None
        self._buffer: TransferBuffer | None = None
        self._pending: PendingBalanceSet | None = None
        self._listener: TransferListener | None = None
        self._persister: TransferPersister | None = None
        self._balances: BalanceRefresher | None = None
        self._trend_engine: TrendEngine | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._transfer_task: asyncio.Task[None] | None = None
        self._balance_task: asyncio.Task[None] | None = None
        self._trend_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        if self._listener:
            self._stats.events_received = self._listener.stats.received
            self._stats.events_dropped = self._listener.stats.dropped
        if self._persister:
            self._stats.transfers_persisted = self._persister.stats.transfers_persisted
            self._stats.batches_failed = self._persister.stats.batches_failed
        if self._balances:
            self._stats.balances_refreshed = self._balances.stats.balances_written
        if self._trend_engine:
            self._stats.trends_computed = self._trend_engine.stats.trends_computed
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def registry(self) -> AssetRegistry | None:
        return self._registry

    @property
    def persister(self) -> TransferPersister | None:
        return self._persister

    @property
    def balances(self) -> BalanceRefresher | None:
        return self._balances

    @property
    def trend_engine(self) -> TrendEngine | None:
        return self._trend_engine

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components and begins processing transfer logs.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops the listener, lets the periodic loops finish, flushes what is
        still buffered and releases resources.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._final_flush()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings
        logger.debug("Settings: %s", settings.redacted_summary())

        # Initialize Redis (optional RPC cache)
        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        # Initialize Database Manager
        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        if settings.database.url.startswith("sqlite"):
            # Local SQLite runs have no migration step.
            await self._db_manager.init_schema_async()
        session_factory = self._db_manager.session_factory

        # Initialize chain client
        if self._injected_chain is not None:
            self._chain = self._injected_chain
        else:
            logger.debug("Initializing chain client...")
            self._chain = ChainClient(
                settings.chain.rpc_url,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=settings.chain.max_requests_per_second,
            )

        call_timeout = settings.chain.call_timeout_seconds

        logger.debug("Loading asset registry...")
        self._registry = AssetRegistry(session_factory, self._chain, call_timeout=call_timeout)
        await self._registry.load()

        self._buffer = TransferBuffer(
            threshold=settings.ingest.batch_size,
            on_threshold=self._on_buffer_threshold,
        )
        self._pending = PendingBalanceSet()
        self._listener = TransferListener(self._buffer, self._pending)

        dead_letter = (
            DeadLetterLog(settings.ingest.dead_letter_path) if settings.ingest.dead_letter_path else None
        )
        self._persister = TransferPersister(
            self._buffer,
            self._registry,
            self._chain,
            session_factory,
            clock=self._clock,
            call_timeout=call_timeout,
            retry_attempts=settings.ingest.retry_attempts,
            retry_backoff_seconds=settings.ingest.retry_backoff_seconds,
            dead_letter=dead_letter,
        )
        self._balances = BalanceRefresher(
            self._pending,
            self._chain,
            session_factory,
            clock=self._clock,
            registry=self._registry,
            freshness_ttl_seconds=settings.balance.freshness_ttl_seconds,
            max_concurrency=settings.balance.max_concurrency,
            call_timeout=call_timeout,
            max_deferrals=settings.balance.max_deferrals,
        )
        self._trend_engine = TrendEngine(
            session_factory,
            clock=self._clock,
            cooldown_seconds=settings.trend.cooldown_seconds,
            window_seconds=settings.trend.window_seconds,
            group_size=settings.trend.group_size,
            max_assets_per_cycle=settings.trend.max_assets_per_cycle,
        )

    def _on_buffer_threshold(self) -> None:
        if self._persister:
            self._persister.request_flush()

    async def _start_background_services(self) -> None:
        """Start background services."""
        logger.debug("Starting transfer listener...")
        self._listener_task = asyncio.create_task(self._run_listener())

        logger.debug("Starting transfer flush loop...")
        self._transfer_task = asyncio.create_task(self._run_transfer_flush_loop())

        logger.debug("Starting balance refresh loop...")
        self._balance_task = asyncio.create_task(self._run_balance_loop())

        logger.debug("Starting trend loop...")
        self._trend_task = asyncio.create_task(self._run_trend_loop())

    def _record_error(self, context: str, e: Exception) -> None:
        logger.error("%s: %s", context, e)
        self._stats.errors += 1
        self._stats.last_error = str(e)

    async def _wait_or_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; returns True if stop was requested."""
        if not self._stop_event:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def _run_listener(self) -> None:
        """Consume the log source, resubscribing after connection errors."""
        if not self._listener or not self._stop_event:
            return

        while not self._stop_event.is_set():
            try:
                await self._listener.run(self._log_source())
                logger.info("Transfer log source ended")
                return
            except asyncio.CancelledError:
                logger.debug("Listener task cancelled")
                raise
            except Exception as e:
                self._record_error("Transfer log source error", e)
            if await self._wait_or_stop(LISTENER_RECONNECT_DELAY_SECONDS):
                return

    async def _run_transfer_flush_loop(self) -> None:
        if not self._persister or not self._stop_event:
            return

        interval = self._settings.ingest.flush_interval_seconds
        while not self._stop_event.is_set():
            await self._persister.wait_for_request(interval)
            if self._stop_event.is_set():
                break
            try:
                await self._persister.flush()
            except Exception as e:
                self._record_error("Transfer flush loop error", e)

    async def _run_balance_loop(self) -> None:
        if not self._balances:
            return

        interval = self._settings.balance.flush_interval_seconds
        while not await self._wait_or_stop(interval):
            try:
                await self._balances.flush()
            except Exception as e:
                self._record_error("Balance refresh loop error", e)

    async def _run_trend_loop(self) -> None:
        if not self._trend_engine:
            return

        interval = self._settings.trend.interval_seconds
        while not await self._wait_or_stop(interval):
            try:
                await self._trend_engine.run_cycle()
            except Exception as e:
                self._record_error("Trend loop error", e)

    async def _await_or_cancel(self, task: asyncio.Task[None] | None, timeout: float) -> None:
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except TimeoutError:
            logger.warning("Background task did not stop within %.0fs; cancelled", timeout)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._record_error("Background task failed", e)

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        # Stop ingesting first so the final flush sees everything.
        if self._listener_task:
            logger.debug("Stopping transfer listener...")
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None

        if self._persister:
            self._persister.request_flush()

        # wait_for cancels the task when the grace period expires
        await self._await_or_cancel(self._transfer_task, STOP_GRACE_SECONDS)
        self._transfer_task = None
        await self._await_or_cancel(self._balance_task, STOP_GRACE_SECONDS)
        self._balance_task = None
        await self._await_or_cancel(self._trend_task, STOP_GRACE_SECONDS)
        self._trend_task = None

    async def _final_flush(self) -> None:
        """Persist whatever is still buffered."""
        if self._persister:
            try:
                await self._persister.flush()
            except Exception as e:
                self._record_error("Final transfer flush failed", e)
        if self._balances:
            try:
                await self._balances.flush()
            except Exception as e:
                self._record_error("Final balance flush failed", e)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        # Close the chain client we built
        if self._chain and self._chain is not self._injected_chain:
            await self._chain.aclose()
        self._chain = None

        # Close database connections
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        # Close Redis connection
        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        This is a convenience method that starts the pipeline and
        blocks until a stop signal is received.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask a running ``run()`` to stop."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
