"""Ledger RPC client with rate limiting, failover and caching.

This module provides the client the pipeline uses for every external
lookup:
- Block timestamps (immutable, cached in Redis when configured)
- ERC-20 metadata reads (name, symbol, decimals, totalSupply)
- ERC-20 balanceOf reads
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL

Each read is independently callable and independently failable. Callers on
the ingestion path wrap them with ``call_with_fallback`` so one failing read
never aborts a batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from token_trend_tracker.chain.erc20 import ERC20_ABI

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0

# Blocks never change once mined (reorgs are not handled).
BLOCK_CACHE_TTL_SECONDS = 24 * 3600


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when RPC call fails."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            # Wait for tokens to refill
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


async def call_with_fallback(
    awaitable: Awaitable[T],
    *,
    fallback: T,
    timeout: float,
    description: str,
) -> T:
    """Await an external call with its own timeout, returning ``fallback`` on failure.

    The failure is logged and never propagated.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError:
        logger.warning("%s timed out after %.1fs; using fallback %r", description, timeout, fallback)
    except Exception as e:
        logger.warning("%s failed: %s; using fallback %r", description, e, fallback)
    return fallback


class ChainClient:
    """Ledger RPC client with caching and rate limiting.

    Example:
        ```python
        client = ChainClient(
            "https://ethereum-rpc.publicnode.com",
            fallback_rpc_url="https://eth.llamarpc.com",
        )

        ts = await client.get_block_timestamp(19_000_000)
        symbol = await client.get_token_symbol("0xa0b8...")
        balance = await client.get_token_balance("0xholder...", "0xa0b8...")
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL for token metadata in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    def _cache_key(self, key_type: str, address: str) -> str:
        """Generate a cache key."""
        return f"{self._cache_prefix}{key_type}:{address.lower()}"

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        # Periodically retry primary
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _run_with_failover(
        self,
        description: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Run an RPC operation with retry and failover logic.

        Contract-level rejections (reverts, undecodable output) are not
        retried: the node answered and the answer will not change.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        delay = self._retry_delay

        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary():
            endpoints.append(("Primary", self._w3))
        if self._w3_fallback:
            endpoints.append(("Fallback", self._w3_fallback))

        for label, w3 in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await operation(w3)
                    if label == "Primary":
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", description)
                    return result
                except (ContractLogicError, BadFunctionCallOutput) as e:
                    raise RPCError(f"{description} rejected by contract: {e}") from e
                except Web3Exception as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        description,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2  # Exponential backoff

            if label == "Primary":
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCError(f"RPC call {description} failed after all retries: {last_error}")

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute a ``web3.eth`` method with retry and failover logic."""
        return await self._run_with_failover(
            func_name,
            lambda w3: getattr(w3.eth, func_name)(*args),
        )

    async def _call_erc20(self, token_address: str, function_name: str, *args: Any) -> Any:
        """Call a read-only ERC-20 function at the latest block."""

        async def operation(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=ERC20_ABI,
            )
            return await getattr(contract.functions, function_name)(*args).call()

        return await self._run_with_failover(f"{function_name}@{token_address.lower()}", operation)

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get the timestamp (epoch seconds) of a block.

        Args:
            block_number: Block number.

        Returns:
            Block timestamp.
        """
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self._execute_with_retry("get_block", block_number)
        ts = int(block["timestamp"])

        await self._set_cached(cache_key, str(ts), ttl=BLOCK_CACHE_TTL_SECONDS)
        return ts

    async def _get_token_field(self, token_address: str, function_name: str) -> str:
        cache_key = self._cache_key(f"token:{function_name}", token_address)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        value = await self._call_erc20(token_address, function_name)
        text = str(value)
        await self._set_cached(cache_key, text)
        return text

    async def get_token_name(self, token_address: str) -> str:
        """Read ``name()`` of an ERC-20 contract."""
        return await self._get_token_field(token_address, "name")

    async def get_token_symbol(self, token_address: str) -> str:
        """Read ``symbol()`` of an ERC-20 contract."""
        return await self._get_token_field(token_address, "symbol")

    async def get_decimals(self, token_address: str) -> int:
        """Read ``decimals()`` of an ERC-20 contract."""
        return int(await self._get_token_field(token_address, "decimals"))

    async def get_total_supply(self, token_address: str) -> int:
        """Read ``totalSupply()`` in smallest units.

        Not cached: supply moves with mints and burns.
        """
        return int(await self._call_erc20(token_address, "totalSupply"))

    async def get_token_balance(self, holder_address: str, token_address: str) -> int:
        """Read ``balanceOf(holder)`` in smallest units at the latest block.

        Not cached here; freshness is owned by the balance refresher.
        """
        balance = await self._call_erc20(
            token_address,
            "balanceOf",
            AsyncWeb3.to_checksum_address(holder_address),
        )
        return int(balance)

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
