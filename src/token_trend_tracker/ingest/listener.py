"""Transfer log listener feeding the in-memory accumulators."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Mapping
from dataclasses import dataclass
from typing import Any

from token_trend_tracker.chain.erc20 import MalformedEventError, decode_transfer_log
from token_trend_tracker.ingest.buffer import PendingBalanceSet, TransferBuffer
from token_trend_tracker.ingest.models import TransferEvent

logger = logging.getLogger(__name__)


@dataclass
class ListenerStats:
    """Counters for the listener."""

    received: int = 0
    accepted: int = 0
    dropped: int = 0
    removed: int = 0
    last_error: str | None = None


class TransferListener:
    """Decodes raw Transfer logs and stages them for persistence.

    ``handle`` does no I/O: a decoded event is appended to the transfer
    buffer and both counterparties are flagged for a balance refresh.
    """

    def __init__(self, buffer: TransferBuffer, pending: PendingBalanceSet) -> None:
        self._buffer = buffer
        self._pending = pending
        self.stats = ListenerStats()

    def handle(self, raw_log: Mapping[str, Any]) -> TransferEvent | None:
        """Stage one raw log. Returns the decoded event, or None if dropped."""
        self.stats.received += 1

        # Reorg removals are re-sent with removed=true; history is append-only.
        if raw_log.get("removed"):
            self.stats.removed += 1
            logger.debug("Ignoring removed log tx=%s", raw_log.get("transactionHash"))
            return None

        try:
            event = decode_transfer_log(raw_log)
        except MalformedEventError as e:
            self.stats.dropped += 1
            self.stats.last_error = str(e)
            logger.warning(
                "Dropping malformed Transfer log (address=%s tx=%s): %s",
                raw_log.get("address"),
                raw_log.get("transactionHash"),
                e,
            )
            return None

        self._buffer.append(event)
        self._pending.flag_transfer(event)
        self.stats.accepted += 1
        return event

    async def run(self, source: AsyncIterable[Mapping[str, Any]]) -> None:
        """Consume ``source`` until it is exhausted or the task is cancelled."""
        logger.info("Transfer listener started")
        try:
            async for raw_log in source:
                self.handle(raw_log)
        finally:
            logger.info(
                "Transfer listener stopped (received=%d accepted=%d dropped=%d)",
                self.stats.received,
                self.stats.accepted,
                self.stats.dropped,
            )
