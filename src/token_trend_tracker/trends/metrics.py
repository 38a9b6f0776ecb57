"""Pure trend metric functions.

Amounts, balances and supplies are uint256 quantities carried as decimal
strings or ints; ratios are computed with ``Decimal`` and returned as
floats.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

# Trend score weights
VELOCITY_WEIGHT = 0.3
HOLDERS_WEIGHT = 0.2
GROWTH_WEIGHT = 0.3
LARGE_TX_WEIGHT = 0.2

HOLDERS_SCALE = 100
WHALE_PENALTY_THRESHOLD = 80.0
WHALE_PENALTY_FACTOR = 0.05

LARGE_TX_DECILE = 10
WHALE_TOP_N = 10


@dataclass(frozen=True)
class TrendMetrics:
    """Metrics for one asset over one window."""

    velocity: float
    unique_holders: int
    large_transactions: int
    growth_rate: float
    whale_concentration: float

    @property
    def trend_score(self) -> float:
        return trend_score(
            velocity=self.velocity,
            unique_holders=self.unique_holders,
            growth_rate=self.growth_rate,
            large_transactions=self.large_transactions,
            whale_concentration=self.whale_concentration,
        )


def _as_ints(values: Iterable[int | str]) -> list[int]:
    return [int(v) for v in values]


def large_transaction_threshold(amounts: Iterable[int | str]) -> int | None:
    """Amount at offset ``n // 10`` of the amounts sorted descending.

    Returns None for an empty window.
    """
    ordered = sorted(_as_ints(amounts), reverse=True)
    if not ordered:
        return None
    return ordered[len(ordered) // LARGE_TX_DECILE]


def count_large_transactions(amounts: Sequence[int | str]) -> int:
    """Count amounts at or above the top-decile threshold (ties included)."""
    values = _as_ints(amounts)
    threshold = large_transaction_threshold(values)
    if threshold is None:
        return 0
    return sum(1 for v in values if v >= threshold)


def top_n_sum(values: Iterable[int | str], n: int = WHALE_TOP_N) -> int:
    """Sum of the ``n`` largest values."""
    return sum(sorted(_as_ints(values), reverse=True)[:n])


def velocity(transfer_count: int, total_supply: int | str, decimals: int) -> float:
    """Transfers in window per whole token of supply, times 100."""
    supply = int(total_supply)
    if supply <= 0:
        return 0.0
    whole_supply = Decimal(supply) / (Decimal(10) ** decimals)
    return float(Decimal(transfer_count) / whole_supply * 100)


def growth_rate(current_holders: int, baseline_holders: int) -> float:
    """Percentage change of holders against the baseline; zero without a baseline."""
    if baseline_holders <= 0:
        return 0.0
    return (current_holders - baseline_holders) / baseline_holders * 100


def whale_concentration(balances: Iterable[int | str], total_supply: int | str) -> float:
    """Share of supply held by the ten largest holders, as a percentage."""
    supply = int(total_supply)
    if supply <= 0:
        return 0.0
    top = top_n_sum(balances, WHALE_TOP_N)
    if top == 0:
        return 0.0
    return float(Decimal(top) / Decimal(supply) * 100)


def trend_score(
    *,
    velocity: float,
    unique_holders: int,
    growth_rate: float,
    large_transactions: int,
    whale_concentration: float,
) -> float:
    """Weighted composite score, penalised above 80% whale concentration."""
    penalty = 0.0
    if whale_concentration > WHALE_PENALTY_THRESHOLD:
        penalty = (whale_concentration - WHALE_PENALTY_THRESHOLD) * WHALE_PENALTY_FACTOR
    return (
        velocity * VELOCITY_WEIGHT
        + (unique_holders / HOLDERS_SCALE) * HOLDERS_WEIGHT
        + growth_rate * GROWTH_WEIGHT
        + large_transactions * LARGE_TX_WEIGHT
        - penalty
    )
