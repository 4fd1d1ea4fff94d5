"""
Block watcher: turns chain tip changes into block-connected events.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from mixcoin.backends.base import MixcoinBackend
from mixcoin.errors import RpcError

BlockHandler = Callable[[str, int], Awaitable[None]]


class BlockWatcher:
    """
    Polls the node for its tip height and reports every new block.

    Each block is handed to the handler in its own task so a slow block
    never delays noticing the next one.
    """

    def __init__(
        self,
        backend: MixcoinBackend,
        on_block: BlockHandler,
        poll_interval: float = 10.0,
        start_height: int | None = None,
    ):
        self.backend = backend
        self.on_block = on_block
        self.poll_interval = poll_interval
        self.last_height = start_height
        self._task: asyncio.Task[None] | None = None
        self._handlers: set[asyncio.Task[None]] = set()
        self._stopping = False

    async def poll_once(self) -> list[int]:
        """Check the tip once and dispatch any new blocks. Returns the new heights."""
        try:
            tip = await self.backend.get_block_height()
        except RpcError as e:
            logger.warning(f"Failed to poll block height: {e}")
            return []

        if self.last_height is None:
            self.last_height = tip
            return []
        if tip <= self.last_height:
            return []

        new_heights = list(range(self.last_height + 1, tip + 1))
        for height in new_heights:
            try:
                block_hash = await self.backend.get_block_hash(height)
            except RpcError as e:
                logger.warning(f"Failed to fetch hash for block {height}: {e}")
                return new_heights[: new_heights.index(height)]
            self.last_height = height
            task = asyncio.create_task(self._handle(block_hash, height))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)
        return new_heights

    async def _handle(self, block_hash: str, height: int) -> None:
        try:
            await self.on_block(block_hash, height)
        except Exception as e:
            logger.exception(f"Error handling block {height}: {e}")

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Error polling for new blocks: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self._task is None:
            self._stopping = False
            self._task = asyncio.create_task(self._run())
            logger.info(f"Block watcher started at height {self.last_height}")

    async def stop(self) -> None:
        """Stop polling and wait for in-flight block handlers."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        logger.info("Block watcher stopped")
