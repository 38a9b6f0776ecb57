"""Token Trend Tracker - ERC-20 transfer ingestion and trend scoring."""

__version__ = "0.1.0"
