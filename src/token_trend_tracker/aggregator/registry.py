"""Asset registry: cached, persisted metadata for every tracked token.

The in-memory cache is a pure accelerator. It is rebuilt from the store on
start-up and only ever updated after a successful commit, so it never runs
ahead of the persisted rows.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_trend_tracker.chain.client import ChainClient, call_with_fallback
from token_trend_tracker.storage.database import transaction
from token_trend_tracker.storage.repos import AssetDTO, AssetRepository

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0

# Used when a contract does not answer the corresponding ERC-20 getter.
FALLBACK_NAME = "Unknown"
FALLBACK_SYMBOL = "UNKNOWN"
FALLBACK_TOTAL_SUPPLY = "0"
FALLBACK_DECIMALS = 18


class AssetRegistry:
    """Cache of asset metadata backed by the ``assets`` table.

    Example:
        ```python
        registry = AssetRegistry(session_factory, chain)
        await registry.load()

        await registry.register_batch(["0xa0b8..."], discovered_at=1_700_000_000)
        asset = registry.lookup("0xa0b8...")
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chain: ChainClient,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._chain = chain
        self._call_timeout = call_timeout
        self._cache: dict[str, AssetDTO] = {}

    def lookup(self, asset_id: str) -> AssetDTO | None:
        """Return cached metadata. Never performs I/O."""
        return self._cache.get(asset_id.lower())

    def __contains__(self, asset_id: object) -> bool:
        return isinstance(asset_id, str) and asset_id.lower() in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    async def load(self) -> int:
        """Warm the cache from the store.

        Returns:
            Number of assets loaded.
        """
        async with self._session_factory() as session:
            assets = await AssetRepository(session).list_all()
        self._cache = {a.id: a for a in assets}
        logger.info("Asset registry loaded %d assets", len(assets))
        return len(assets)

    async def _fetch_metadata(self, asset_id: str, discovered_at: int) -> AssetDTO:
        """Read the four ERC-20 getters, each with its own timeout and fallback."""
        name, symbol, total_supply, decimals = await asyncio.gather(
            call_with_fallback(
                self._chain.get_token_name(asset_id),
                fallback=FALLBACK_NAME,
                timeout=self._call_timeout,
                description=f"name() of {asset_id}",
            ),
            call_with_fallback(
                self._chain.get_token_symbol(asset_id),
                fallback=FALLBACK_SYMBOL,
                timeout=self._call_timeout,
                description=f"symbol() of {asset_id}",
            ),
            call_with_fallback(
                self._chain.get_total_supply(asset_id),
                fallback=FALLBACK_TOTAL_SUPPLY,
                timeout=self._call_timeout,
                description=f"totalSupply() of {asset_id}",
            ),
            call_with_fallback(
                self._chain.get_decimals(asset_id),
                fallback=FALLBACK_DECIMALS,
                timeout=self._call_timeout,
                description=f"decimals() of {asset_id}",
            ),
        )
        return AssetDTO(
            id=asset_id,
            name=str(name),
            symbol=str(symbol),
            total_supply=str(total_supply),
            decimals=int(decimals),
            first_seen=discovered_at,
            last_updated=discovered_at,
        )

    async def register_batch(self, asset_ids: Iterable[str], discovered_at: int) -> list[AssetDTO]:
        """Persist metadata for every id not yet cached.

        Concurrent registrations of the same id are safe: the first insert
        wins and every caller caches the row that was actually persisted.

        Returns:
            Assets newly inserted by this call.
        """
        unknown = sorted({a.lower() for a in asset_ids} - set(self._cache))
        if not unknown:
            return []

        candidates = await asyncio.gather(*(self._fetch_metadata(a, discovered_at) for a in unknown))

        async with transaction(self._session_factory) as session:
            repo = AssetRepository(session)
            existing = await repo.get_many(unknown)
            inserted = await repo.insert_if_absent([c for c in candidates if c.id not in existing])
            persisted = await repo.get_many(unknown)

        discovered = [persisted[asset_id] for asset_id in unknown if asset_id in inserted]
        self._cache.update(persisted)

        for asset in discovered:
            logger.info("New asset discovered: %s (%s) at %s", asset.name, asset.symbol, asset.id)
        return discovered

    def record_activity(self, asset_id: str, timestamp: int) -> None:
        """Advance the cached ``last_updated`` after a committed transfer batch."""
        key = asset_id.lower()
        cached = self._cache.get(key)
        if cached is None or cached.last_updated >= timestamp:
            return
        self._cache[key] = dataclasses.replace(cached, last_updated=timestamp)
