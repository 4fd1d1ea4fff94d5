"""
Application context: the shared state threaded through every component.

Built once at startup by MixcoinService; nothing here is a module global.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from mixcoin.backends.base import MixcoinBackend
from mixcoin.config import Settings
from mixcoin.database import KeyValueStore
from mixcoin.pool import PoolManager


class BlockchainHeight:
    """
    Current chain height as seen by this process.

    Only block-connected events (and the startup refresh) move it, and it
    never moves backwards. Reads and writes happen on the event loop
    thread, so assignment is atomic.
    """

    def __init__(self, height: int = 0):
        self._height = height

    @property
    def value(self) -> int:
        return self._height

    def update(self, height: int) -> bool:
        """Advance to height. Returns False (and keeps the old value) for stale heights."""
        if height < self._height:
            logger.debug(f"Ignoring stale height {height} (current {self._height})")
            return False
        self._height = height
        return True


@dataclass
class MixcoinContext:
    settings: Settings
    backend: MixcoinBackend
    database: KeyValueStore
    pool: PoolManager
    height: BlockchainHeight
