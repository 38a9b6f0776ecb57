"""Storage layer - Database schemas and repositories."""

from token_trend_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    transaction,
)
from token_trend_tracker.storage.models import (
    AssetModel,
    Base,
    HolderBalanceModel,
    TransferModel,
    TrendSnapshotModel,
)
from token_trend_tracker.storage.repos import (
    AssetDTO,
    AssetRepository,
    HolderBalanceDTO,
    HolderBalanceRepository,
    TransferDTO,
    TransferRepository,
    TrendingAssetDTO,
    TrendSnapshotDTO,
    TrendSnapshotRepository,
)

__all__ = [
    "AssetDTO",
    "AssetModel",
    "AssetRepository",
    "Base",
    "DatabaseManager",
    "HolderBalanceDTO",
    "HolderBalanceModel",
    "HolderBalanceRepository",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "TrendSnapshotDTO",
    "TrendSnapshotModel",
    "TrendSnapshotRepository",
    "TrendingAssetDTO",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "transaction",
]
