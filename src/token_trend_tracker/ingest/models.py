"""Data models for the ingest module."""

from dataclasses import dataclass

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class TransferEvent:
    """A decoded ERC-20 Transfer log, not yet timestamped.

    Addresses and the transaction hash are lowercase hex; ``amount`` is the
    uint256 value as a base-10 string.
    """

    asset_id: str
    sender: str
    recipient: str
    amount: str
    block_number: int
    tx_hash: str
    log_index: int = 0

    @property
    def is_mint(self) -> bool:
        return self.sender == ZERO_ADDRESS

    @property
    def is_burn(self) -> bool:
        return self.recipient == ZERO_ADDRESS
