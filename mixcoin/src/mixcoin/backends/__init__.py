"""
Blockchain backend implementations.

Available backends:
- BitcoinCoreBackend: Bitcoin Core JSON-RPC with wallet enabled
"""

from mixcoin.backends.base import MixcoinBackend, UnspentOutput
from mixcoin.backends.bitcoin_core import BitcoinCoreBackend

__all__ = [
    "BitcoinCoreBackend",
    "MixcoinBackend",
    "UnspentOutput",
]
