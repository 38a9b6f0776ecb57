"""Trend scoring - pure metric functions and the periodic recompute engine."""

from token_trend_tracker.trends.engine import TrendCycleResult, TrendEngine, TrendStats
from token_trend_tracker.trends.metrics import TrendMetrics

__all__ = [
    "TrendCycleResult",
    "TrendEngine",
    "TrendMetrics",
    "TrendStats",
]
