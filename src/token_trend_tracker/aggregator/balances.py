"""Holder balance refresh with a freshness TTL cache.

Balances are looked up with ``balanceOf`` only when the stored value is
older than the freshness TTL. The in-memory cache reads through to the
``holder_balances`` table on a miss and is written through after every
successful upsert, so it always mirrors the store. Entries older than the
TTL are evicted at the start of each refresh; the store keeps the value.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_trend_tracker.aggregator.registry import AssetRegistry
from token_trend_tracker.chain.client import ChainClient, call_with_fallback
from token_trend_tracker.clock import Clock
from token_trend_tracker.ingest.buffer import PendingBalanceSet
from token_trend_tracker.ingest.models import ZERO_ADDRESS
from token_trend_tracker.storage.database import transaction
from token_trend_tracker.storage.repos import HolderBalanceDTO, HolderBalanceRepository

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_TTL_SECONDS = 60
DEFAULT_MAX_CONCURRENCY = 50
DEFAULT_CALL_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_DEFERRALS = 30

# (holder, asset_id), both lowercase.
BalanceKey = tuple[str, str]


@dataclass
class BalanceStats:
    """Statistics for the balance refresher."""

    flushes: int = 0
    cache_hits: int = 0
    lookups: int = 0
    failed_lookups: int = 0
    balances_written: int = 0
    failed_writes: int = 0
    deferred: int = 0
    dropped_deferrals: int = 0
    evicted: int = 0
    last_error: str | None = None


class BalanceRefresher:
    """Refreshes flagged (holder, asset) balances in batches."""

    def __init__(
        self,
        pending: PendingBalanceSet,
        chain: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock,
        registry: AssetRegistry | None = None,
        freshness_ttl_seconds: int = DEFAULT_FRESHNESS_TTL_SECONDS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_deferrals: int = DEFAULT_MAX_DEFERRALS,
    ) -> None:
        """Initialize the refresher.

        Args:
            pending: Set of flagged pairs drained by ``flush``.
            chain: RPC client used for ``balanceOf``.
            session_factory: Session factory for the balance store.
            clock: Time source for freshness checks and ``last_updated``.
            registry: When given, pairs whose asset is not registered yet are
                re-flagged instead of refreshed.
            freshness_ttl_seconds: Age under which a stored balance is reused.
            max_concurrency: Concurrent ``balanceOf`` calls per asset.
            call_timeout: Timeout for each ``balanceOf`` call.
            max_deferrals: Flushes a pair may wait for its asset to be
                registered before it is dropped.
        """
        self._pending = pending
        self._chain = chain
        self._session_factory = session_factory
        self._clock = clock
        self._registry = registry
        self._ttl = freshness_ttl_seconds
        self._max_concurrency = max_concurrency
        self._call_timeout = call_timeout
        self._max_deferrals = max_deferrals

        self._cache: dict[BalanceKey, HolderBalanceDTO] = {}
        self._deferrals: dict[BalanceKey, int] = {}
        self._lock = asyncio.Lock()
        self.stats = BalanceStats()

    def cached(self, holder: str, asset_id: str) -> HolderBalanceDTO | None:
        return self._cache.get((holder.lower(), asset_id.lower()))

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def flush(self) -> dict[BalanceKey, str]:
        """Drain the pending set and refresh it. No-op while a flush runs."""
        if self._lock.locked():
            logger.debug("Balance flush already in progress; skipping")
            return {}

        async with self._lock:
            pairs = self._pending.drain_and_reset()
            if not pairs:
                return {}
            self.stats.flushes += 1

            if self._registry is not None:
                pairs = self._defer_unregistered(pairs, self._registry)

            return await self.refresh(pairs)

    def _defer_unregistered(self, pairs: set[BalanceKey], registry: AssetRegistry) -> set[BalanceKey]:
        """Re-flag pairs whose asset is not registered yet.

        A pair that has waited ``max_deferrals`` flushes is dropped; it is
        flagged again the next time the holder transfers the asset.
        """
        ready: set[BalanceKey] = set()
        requeued = 0
        for pair in pairs:
            if registry.lookup(pair[1]) is not None:
                self._deferrals.pop(pair, None)
                ready.add(pair)
                continue

            waited = self._deferrals.get(pair, 0) + 1
            if waited > self._max_deferrals:
                self._deferrals.pop(pair, None)
                self.stats.dropped_deferrals += 1
                logger.warning(
                    "Dropping balance refresh of %s on %s: asset unregistered after %d flushes",
                    pair[0],
                    pair[1],
                    self._max_deferrals,
                )
                continue

            self._deferrals[pair] = waited
            self._pending.flag(*pair)
            requeued += 1

        if requeued:
            self.stats.deferred += requeued
            logger.debug("Deferred %d balance refreshes for unregistered assets", requeued)
        return ready

    def _evict_expired(self, now: int) -> None:
        expired = [key for key, dto in self._cache.items() if now - dto.last_updated >= self._ttl]
        for key in expired:
            del self._cache[key]
        self.stats.evicted += len(expired)

    async def _read_through(self, keys: Iterable[BalanceKey]) -> None:
        """Load stored balances for keys missing from the cache."""
        by_asset: dict[str, list[str]] = defaultdict(list)
        for holder, asset_id in keys:
            if (holder, asset_id) not in self._cache:
                by_asset[asset_id].append(holder)
        if not by_asset:
            return

        try:
            async with self._session_factory() as session:
                repo = HolderBalanceRepository(session)
                for asset_id, holders in by_asset.items():
                    stored = await repo.get_many(asset_id, holders)
                    for holder, dto in stored.items():
                        self._cache[(holder, asset_id)] = dto
        except Exception as e:
            logger.warning("Balance read-through failed; treating %d assets as stale: %s", len(by_asset), e)

    async def _fetch_asset_balances(self, asset_id: str, holders: list[str]) -> dict[str, int]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def fetch_one(holder: str) -> int | None:
            async with semaphore:
                return await call_with_fallback(
                    self._chain.get_token_balance(holder, asset_id),
                    fallback=None,
                    timeout=self._call_timeout,
                    description=f"balanceOf({holder}) on {asset_id}",
                )

        results = await asyncio.gather(*(fetch_one(h) for h in holders))
        fetched: dict[str, int] = {}
        for holder, balance in zip(holders, results, strict=True):
            if balance is None:
                self.stats.failed_lookups += 1
                continue
            fetched[holder] = int(balance)
        return fetched

    async def refresh(self, pairs: Iterable[BalanceKey]) -> dict[BalanceKey, str]:
        """Return current balances for ``pairs``, looking up only stale ones.

        A failed lookup keeps the previously stored value (and is omitted
        from the result when there is none).
        """
        keys = {(h.lower(), a.lower()) for h, a in pairs if h.lower() != ZERO_ADDRESS}
        if not keys:
            return {}

        now = self._clock.now()
        self._evict_expired(now)
        await self._read_through(keys)

        resolved: dict[BalanceKey, str] = {}
        stale: dict[str, list[str]] = defaultdict(list)
        for holder, asset_id in sorted(keys):
            cached = self._cache.get((holder, asset_id))
            if cached is not None and now - cached.last_updated < self._ttl:
                resolved[(holder, asset_id)] = cached.balance
                self.stats.cache_hits += 1
            else:
                stale[asset_id].append(holder)

        rows: list[HolderBalanceDTO] = []
        for asset_id, holders in stale.items():
            self.stats.lookups += len(holders)
            fetched = await self._fetch_asset_balances(asset_id, holders)
            for holder in holders:
                if holder in fetched:
                    rows.append(
                        HolderBalanceDTO(
                            holder=holder,
                            asset_id=asset_id,
                            balance=str(fetched[holder]),
                            last_updated=now,
                        )
                    )
                    resolved[(holder, asset_id)] = str(fetched[holder])
                elif (previous := self._cache.get((holder, asset_id))) is not None:
                    resolved[(holder, asset_id)] = previous.balance

        if rows:
            try:
                async with transaction(self._session_factory) as session:
                    await HolderBalanceRepository(session).upsert_many(rows)
            except Exception as e:
                self.stats.failed_writes += 1
                self.stats.last_error = str(e)
                logger.error("Balance upsert of %d rows rolled back: %s", len(rows), e)
            else:
                for row in rows:
                    self._cache[(row.holder, row.asset_id)] = row
                self.stats.balances_written += len(rows)
                logger.debug("Refreshed %d balances (%d served from cache)", len(rows), len(resolved) - len(rows))

        return resolved
