"""ERC-20 ABI fragments and Transfer log decoding."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from web3 import AsyncWeb3

from token_trend_tracker.ingest.models import ZERO_ADDRESS, TransferEvent

TRANSFER_EVENT_SIGNATURE = AsyncWeb3.to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_UINT256_HEX_DIGITS = 64

__all__ = [
    "ERC20_ABI",
    "TRANSFER_EVENT_SIGNATURE",
    "ZERO_ADDRESS",
    "MalformedEventError",
    "decode_transfer_log",
]


class MalformedEventError(ValueError):
    """Raised when a raw log is not a well-formed ERC-20 Transfer."""


def _to_hex(value: Any) -> str:
    # value may be HexBytes, bytes or a hex string.
    if isinstance(value, bytes | bytearray):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        text = value.lower()
        return text if text.startswith("0x") else "0x" + text
    raise MalformedEventError(f"expected hex value, got {type(value).__name__}")


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    raise MalformedEventError(f"expected integer, got {type(value).__name__}")


def _topic_to_address(topic: Any) -> str:
    hexed = _to_hex(topic)[2:]
    if len(hexed) != 64:
        raise MalformedEventError(f"address topic must be 32 bytes, got {len(hexed) // 2}")
    return ("0x" + hexed[-40:]).lower()


def decode_transfer_log(log: Mapping[str, Any]) -> TransferEvent:
    """Decode a raw ``Transfer(address,address,uint256)`` log.

    Only the ERC-20 shape is accepted: exactly three topics (signature, from,
    to) with the value in ``data``. ERC-721 transfers carry a fourth indexed
    topic and are rejected.

    Raises:
        MalformedEventError: If any field is missing or does not decode.
    """
    try:
        asset_id = _to_hex(log["address"])
        if not _ADDRESS_RE.match(asset_id):
            raise MalformedEventError(f"invalid contract address {asset_id!r}")

        topics = list(log["topics"])
        if len(topics) != 3:
            raise MalformedEventError(f"expected 3 topics, got {len(topics)}")
        if _to_hex(topics[0]) != TRANSFER_EVENT_SIGNATURE:
            raise MalformedEventError("topic0 is not the Transfer signature")

        data = _to_hex(log["data"])[2:]
        if not data or len(data) > _UINT256_HEX_DIGITS:
            raise MalformedEventError(f"data is not a uint256 ({len(data) // 2} bytes)")
        amount = int(data, 16)

        return TransferEvent(
            asset_id=asset_id,
            sender=_topic_to_address(topics[1]),
            recipient=_topic_to_address(topics[2]),
            amount=str(amount),
            block_number=_to_int(log["blockNumber"]),
            tx_hash=_to_hex(log["transactionHash"]),
            log_index=_to_int(log.get("logIndex") or 0),
        )
    except MalformedEventError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEventError(f"undecodable Transfer log: {e!r}") from e
