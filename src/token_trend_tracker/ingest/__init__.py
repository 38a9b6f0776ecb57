"""Ingestion layer - Transfer staging buffers and event models."""

from token_trend_tracker.ingest.buffer import PendingBalanceSet, TransferBuffer
from token_trend_tracker.ingest.models import ZERO_ADDRESS, TransferEvent

__all__ = [
    "PendingBalanceSet",
    "TransferBuffer",
    "TransferEvent",
    "ZERO_ADDRESS",
]
