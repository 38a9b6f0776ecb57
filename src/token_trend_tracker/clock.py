"""Injectable wall clock.

Every component that reasons about freshness, cooldowns or windows takes a
``Clock`` so tests can drive time explicitly.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int:
        """Current time as whole epoch seconds."""
        ...


class SystemClock:
    """Clock backed by the host wall clock."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = int(start)

    def now(self) -> int:
        return self._now

    def advance(self, seconds: float) -> int:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += int(seconds)
        return self._now

    def set(self, ts: int) -> None:
        self._now = int(ts)
