"""WebSocket subscription to ERC-20 Transfer logs."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from web3 import AsyncWeb3, WebSocketProvider

from token_trend_tracker.chain.erc20 import TRANSFER_EVENT_SIGNATURE

logger = logging.getLogger(__name__)


async def subscribe_transfer_logs(ws_url: str) -> AsyncIterator[dict[str, Any]]:
    """Yield every raw Transfer log the node pushes, across all contracts.

    The connection is closed when the generator is closed or cancelled.
    """
    async with AsyncWeb3(WebSocketProvider(ws_url)) as w3:
        subscription_id = await w3.eth.subscribe("logs", {"topics": [TRANSFER_EVENT_SIGNATURE]})
        logger.info("Subscribed to Transfer logs (subscription=%s)", subscription_id)

        async for message in w3.socket.process_subscriptions():
            result = message.get("result") if isinstance(message, dict) else None
            if result is None:
                continue
            yield dict(result)
