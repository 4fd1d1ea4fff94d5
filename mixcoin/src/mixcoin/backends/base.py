"""
Base blockchain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class UnspentOutput:
    address: str
    amount: int  # satoshis
    txid: str
    vout: int
    confirmations: int


class MixcoinBackend(ABC):
    """
    Abstract blockchain backend interface.

    Unlike a watch-only backend, the mixer relies on the node's wallet:
    escrow addresses are issued by it and payouts are funded from it.
    Implementations raise mixcoin.errors.RpcError on node failures.
    """

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def get_block_hash(self, block_height: int) -> str:
        """Get block hash for given height"""

    @abstractmethod
    async def list_unspent(
        self, min_conf: int, max_conf: int, addresses: list[str]
    ) -> list[UnspentOutput]:
        """List wallet UTXOs at addresses with confirmations in [min_conf, max_conf]"""

    @abstractmethod
    async def send_to_address(self, address: str, amount: int) -> str:
        """Pay amount satoshis to address from the wallet, returns txid"""

    @abstractmethod
    async def get_new_address(self) -> str:
        """Generate a fresh wallet address"""

    async def validate_address(self, address: str) -> bool:
        """Check that address is valid for the node's network"""
        return bool(address)

    async def close(self) -> None:
        """Close backend connection"""
        pass
