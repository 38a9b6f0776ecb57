"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_trend_tracker.chain.client import ChainClient
from token_trend_tracker.chain.erc20 import TRANSFER_EVENT_SIGNATURE
from token_trend_tracker.clock import ManualClock
from token_trend_tracker.storage.database import (
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)

T0 = 1_700_000_000
BLOCK_TIME_SECONDS = 12

TOKEN = "0x" + "a0" * 20
OTHER_TOKEN = "0x" + "b1" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
CAROL = "0x" + "33" * 20


def block_timestamp(height: int) -> int:
    """Deterministic block time used by the mocked chain."""
    return T0 + height * BLOCK_TIME_SECONDS


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite so separate sessions can run concurrently."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def async_engine(database_url: str):
    """Create an async SQLite engine with the schema installed."""
    engine = create_async_db_engine(database_url, echo=False)
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return create_async_session_factory(async_engine)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]):
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=T0)


@pytest.fixture
def mock_chain() -> MagicMock:
    """Create a mock chain client with well-behaved ERC-20 answers."""
    chain = MagicMock(spec=ChainClient)
    chain.get_block_timestamp = AsyncMock(side_effect=block_timestamp)
    chain.get_token_name = AsyncMock(return_value="Test Token")
    chain.get_token_symbol = AsyncMock(return_value="TST")
    chain.get_total_supply = AsyncMock(return_value=1_000_000 * 10**18)
    chain.get_decimals = AsyncMock(return_value=18)
    chain.get_token_balance = AsyncMock(return_value=0)
    return chain


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    """Factory for raw Transfer logs as delivered by the node."""

    def _make_log(
        *,
        asset: str = TOKEN,
        sender: str = ALICE,
        recipient: str = BOB,
        amount: int = 1000,
        block_number: int = 1,
        tx_hash: str | None = None,
        log_index: int = 0,
    ) -> dict[str, Any]:
        return {
            "address": asset,
            "topics": [
                TRANSFER_EVENT_SIGNATURE,
                _address_topic(sender),
                _address_topic(recipient),
            ],
            "data": "0x" + format(amount, "064x"),
            "blockNumber": block_number,
            "transactionHash": tx_hash or "0x" + format(block_number * 1000 + log_index, "064x"),
            "logIndex": log_index,
            "removed": False,
        }

    return _make_log
