"""
Per-block processing of the chunk pool.

On every connected block the orchestrator:
1. prunes receivable chunks whose send_by deadline has passed,
2. asks the node for confirmed deposits at the remaining escrow addresses,
3. harvests the matching chunks from the pool,
4. runs the fee decision for each one using this block's hash,
5. moves each chunk to the reserve (fee) or to mixing and the scheduler.

Pruning runs first so a chunk can never be both pruned and promoted in
the same block. Harvesting removes chunks from the pool atomically, so
two overlapping block handlers never process the same chunk twice.
"""

from __future__ import annotations

from loguru import logger

from mixcoin.backends.base import UnspentOutput
from mixcoin.config import Settings
from mixcoin.context import MixcoinContext
from mixcoin.errors import MixcoinError, RpcError, SchedulingError
from mixcoin.fee import is_fee
from mixcoin.models import PoolItem, PoolItemKind, PoolLabel, Utxo
from mixcoin.scheduler import MixScheduler, ScheduledRelease


class Orchestrator:
    def __init__(self, context: MixcoinContext, scheduler: MixScheduler):
        self.context = context
        self.scheduler = scheduler
        self.blocks_processed = 0

    @property
    def settings(self) -> Settings:
        return self.context.settings

    async def prune(self) -> list[PoolItem]:
        """Drop receivable chunks whose deposit deadline is behind the current height."""
        height = self.context.height.value

        def still_receivable(item: PoolItem) -> bool:
            if item.kind != PoolItemKind.REQUEST or item.request is None:
                return True
            return height <= item.request.send_by

        pruned = await self.context.pool.filter(still_receivable)
        if pruned:
            logger.info(f"Pruned {len(pruned)} expired chunks at height {height}")
            for item in pruned:
                logger.debug(f"Pruned chunk {item.key}")
        return pruned

    def is_valid_received(self, result: UnspentOutput) -> bool:
        """A deposit counts if it is inside the confirmation window and covers a full chunk."""
        in_window = (
            self.settings.min_confirmations <= result.confirmations <= self.settings.max_confirmations
        )
        return in_window and result.amount >= self.settings.chunk_size

    async def find_deposits(self) -> dict[str, Utxo]:
        """
        Map escrow address -> received utxo for pending chunks with a valid deposit.

        Raises:
            RpcError: If the node query fails
        """
        addresses = await self.context.pool.receiving_keys()
        if not addresses:
            return {}

        logger.debug(f"Checking {len(addresses)} receivable addresses for deposits")
        results = await self.context.backend.list_unspent(
            self.settings.min_confirmations, self.settings.max_confirmations, addresses
        )

        pending = set(addresses)
        received: dict[str, Utxo] = {}
        for result in results:
            if result.address not in pending or not self.is_valid_received(result):
                continue
            # Several outputs may pay the same escrow address; keep the first
            received.setdefault(
                result.address,
                Utxo(
                    escrow_address=result.address,
                    amount=result.amount,
                    txid=result.txid,
                    vout=result.vout,
                ),
            )
        return received

    async def on_block_connected(self, block_hash: str, height: int) -> None:
        """Handle one block-connected notification. Never raises on RPC failure."""
        logger.info(f"New block connected with hash {block_hash}, height {height}")
        if not self.context.height.update(height):
            return

        await self.prune()

        try:
            received = await self.find_deposits()
        except RpcError as e:
            logger.error(f"Skipping deposit scan for block {height}: {e}")
            return

        if not received:
            self.blocks_processed += 1
            return

        logger.info(f"Found deposits for {len(received)} chunks")
        harvested = await self.context.pool.scan(list(received))
        for item in harvested:
            if item.kind != PoolItemKind.REQUEST or item.request is None:
                logger.error(f"Unexpected {item.kind.value} item in receivable pool: {item.key}")
                continue
            try:
                await self._route(item, received[item.key], block_hash, height)
            except MixcoinError as e:
                logger.error(f"Failed to route chunk {item.key}: {e}")

        self.blocks_processed += 1
        logger.debug(f"Done handling block {height}")

    async def _route(self, item: PoolItem, utxo: Utxo, block_hash: str, height: int) -> None:
        request = item.request
        assert request is not None

        if is_fee(request.nonce, block_hash, request.fee, self.settings.fee_seed_combiner):
            logger.info(f"Retaining chunk {item.key} as fee")
            await self.context.pool.put(PoolLabel.RESERVE, PoolItem.of_utxo(utxo))
            return

        logger.info(f"Mixing chunk {item.key}")
        await self.context.pool.put(PoolLabel.MIXING, PoolItem.of_utxo(utxo))
        try:
            # Delays count from the confirming block, not the current tip
            self.scheduler.put(request, height)
        except SchedulingError as e:
            # The utxo must not fund another client's payout; the operator
            # settles this chunk by hand from the escalated record.
            await self.context.pool.remove(PoolLabel.MIXING, item.key)
            self.scheduler.escalate(
                ScheduledRelease(
                    escrow_address=item.key,
                    output_address=request.output_address,
                    release_height=height,
                ),
                e,
            )
