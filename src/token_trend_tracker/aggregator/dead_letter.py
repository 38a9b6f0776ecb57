"""JSON-lines log of transfer batches that could not be persisted."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from token_trend_tracker.storage.repos import TransferDTO

logger = logging.getLogger(__name__)


class DeadLetterLog:
    """Append-only file with one JSON object per failed batch.

    Each line has ``failed_at`` (epoch seconds), ``reason`` and ``transfers``
    (the rows exactly as they would have been inserted), so a batch can be
    replayed once the store recovers.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _append_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def write(self, transfers: Sequence[TransferDTO], *, reason: str, failed_at: int) -> None:
        entry = {
            "failed_at": failed_at,
            "reason": reason,
            "transfers": [
                {
                    "asset_id": t.asset_id,
                    "sender": t.sender,
                    "recipient": t.recipient,
                    "amount": t.amount,
                    "timestamp": t.timestamp,
                    "block_number": t.block_number,
                    "tx_hash": t.tx_hash,
                    "log_index": t.log_index,
                }
                for t in transfers
            ],
        }
        await asyncio.to_thread(self._append_line, json.dumps(entry, separators=(",", ":")))
        logger.warning("Dead-lettered batch of %d transfers to %s", len(transfers), self.path)

    def read_entries(self) -> Iterator[dict[str, Any]]:
        """Iterate over the logged batches, oldest first."""
        if not self.path.exists():
            return
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)
