"""In-memory staging for decoded transfers and pending balance refreshes.

Both containers are appended to from the event path and drained by the
flush loops. Draining swaps the contents out under a lock so nothing is
lost or delivered twice, even when events arrive while a flush is in
progress.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from token_trend_tracker.ingest.models import ZERO_ADDRESS, TransferEvent


class TransferBuffer:
    """Ordered buffer of decoded transfers awaiting persistence."""

    def __init__(
        self,
        *,
        threshold: int | None = None,
        on_threshold: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the buffer.

        Args:
            threshold: Length at which ``on_threshold`` fires.
            on_threshold: Callback requesting an early flush. Must not block.
        """
        self._items: list[TransferEvent] = []
        self._lock = threading.Lock()
        self._threshold = threshold
        self._on_threshold = on_threshold

    def append(self, event: TransferEvent) -> None:
        """Add an event. Never blocks on I/O."""
        with self._lock:
            self._items.append(event)
            size = len(self._items)
        if self._on_threshold is not None and self._threshold is not None and size >= self._threshold:
            self._on_threshold()

    def drain_and_reset(self) -> list[TransferEvent]:
        """Return everything buffered (arrival order) and leave the buffer empty."""
        with self._lock:
            items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class PendingBalanceSet:
    """Set of (holder, asset) pairs whose balances must be refreshed."""

    def __init__(self) -> None:
        self._pairs: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def flag(self, holder: str, asset_id: str) -> bool:
        """Mark a pair as needing a refresh.

        The zero address is never flagged.

        Returns:
            True if the pair was newly added.
        """
        holder = holder.lower()
        if holder == ZERO_ADDRESS:
            return False
        pair = (holder, asset_id.lower())
        with self._lock:
            if pair in self._pairs:
                return False
            self._pairs.add(pair)
            return True

    def flag_transfer(self, event: TransferEvent) -> None:
        """Flag both parties of a transfer."""
        self.flag(event.sender, event.asset_id)
        self.flag(event.recipient, event.asset_id)

    def drain_and_reset(self) -> set[tuple[str, str]]:
        with self._lock:
            pairs, self._pairs = self._pairs, set()
        return pairs

    def __contains__(self, pair: object) -> bool:
        with self._lock:
            return pair in self._pairs

    def __len__(self) -> int:
        with self._lock:
            return len(self._pairs)
