"""Aggregation layer - asset registry, batch persistence and balance refresh."""

from token_trend_tracker.aggregator.balances import BalanceRefresher, BalanceStats
from token_trend_tracker.aggregator.dead_letter import DeadLetterLog
from token_trend_tracker.aggregator.persister import (
    FlushResult,
    PersistenceError,
    PersisterStats,
    TransferPersister,
)
from token_trend_tracker.aggregator.registry import AssetRegistry

__all__ = [
    "AssetRegistry",
    "BalanceRefresher",
    "BalanceStats",
    "DeadLetterLog",
    "FlushResult",
    "PersistenceError",
    "PersisterStats",
    "TransferPersister",
]
