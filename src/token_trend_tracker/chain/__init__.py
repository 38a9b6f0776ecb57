"""Ledger access - RPC reads, ERC-20 decoding and the log subscription."""

from token_trend_tracker.chain.client import (
    ChainClient,
    ChainClientError,
    RateLimiter,
    RPCError,
    call_with_fallback,
)
from token_trend_tracker.chain.erc20 import (
    ERC20_ABI,
    TRANSFER_EVENT_SIGNATURE,
    ZERO_ADDRESS,
    MalformedEventError,
    decode_transfer_log,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ERC20_ABI",
    "MalformedEventError",
    "RPCError",
    "RateLimiter",
    "TRANSFER_EVENT_SIGNATURE",
    "ZERO_ADDRESS",
    "call_with_fallback",
    "decode_transfer_log",
]
