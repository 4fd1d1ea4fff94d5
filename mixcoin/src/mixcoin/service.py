"""
Mixcoin service: request handling, startup and ordered shutdown.

Coordinates all components:
- Chunk request validation and warrant issuance
- Block processing (orchestrator + block watcher)
- Delayed payouts (mix scheduler)
- Persistence of in-flight pool state
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from mixcoin.backends.base import MixcoinBackend
from mixcoin.config import Settings
from mixcoin.context import BlockchainHeight, MixcoinContext
from mixcoin.crypto import KeyPair
from mixcoin.database import KeyValueStore
from mixcoin.errors import ChunkValidationError, ServiceStoppingError
from mixcoin.models import ChunkRequest, PoolItem, PoolLabel, parse_chunk_request
from mixcoin.orchestrator import Orchestrator
from mixcoin.pool import PoolManager
from mixcoin.scheduler import MixScheduler, ScheduledRelease
from mixcoin.warrant import WarrantService
from mixcoin.watcher import BlockWatcher


class MixcoinService:
    def __init__(
        self,
        settings: Settings,
        backend: MixcoinBackend,
        database: KeyValueStore,
        keypair: KeyPair | None = None,
    ):
        if keypair is None:
            if settings.private_key:
                keypair = KeyPair.from_hex(settings.private_key)
            else:
                logger.warning("No private key configured, warrants are signed with an ephemeral key")
                keypair = KeyPair()

        self.context = MixcoinContext(
            settings=settings,
            backend=backend,
            database=database,
            pool=PoolManager(database),
            height=BlockchainHeight(),
        )
        self.warrants = WarrantService(keypair, backend.get_new_address)
        self.scheduler = MixScheduler(
            height=self.context.height,
            dispatch=self._dispatch_payout,
            database=database,
            block_interval=settings.block_interval,
            max_attempts=settings.payout_max_attempts,
            retry_delay=settings.payout_retry_delay,
        )
        self.orchestrator = Orchestrator(self.context, self.scheduler)
        self.watcher = BlockWatcher(
            backend, self.orchestrator.on_block_connected, poll_interval=settings.poll_interval
        )
        self.stopping = False
        self.started = False

    @property
    def settings(self) -> Settings:
        return self.context.settings

    @property
    def pool(self) -> PoolManager:
        return self.context.pool

    @property
    def public_key_hex(self) -> str:
        return self.warrants.public_key_hex

    async def start(self) -> None:
        """
        Restore persisted state and start background processing.

        Flow:
        1. Fetch the current chain height
        2. Reload pool items and scheduled releases from the database
        3. Start the mix scheduler and the block watcher
        """
        logger.info("Starting mixcoin service")
        height = await self.context.backend.get_block_height()
        self.context.height.update(height)
        logger.info(f"Blockchain height: {height}")

        await self.pool.bootstrap()
        self.scheduler.restore()

        self.scheduler.start()
        self.watcher.last_height = height
        self.watcher.start()
        self.started = True
        logger.info(f"Mixcoin service started (warrant key: {self.public_key_hex})")

    async def stop(self) -> None:
        """
        Shut down in order: refuse requests, stop block processing, let the
        scheduler finish or persist its releases, close the pool, then the
        database and the node connection.
        """
        if self.stopping:
            return
        logger.info("Stopping mixcoin service...")
        self.stopping = True

        await self.watcher.stop()
        await self.scheduler.stop()
        logger.info("Shut down mix")
        await self.pool.shutdown()
        logger.info("Shut down pool")
        self.context.database.close()
        logger.info("Shut down database")
        await self.context.backend.close()
        logger.info("Mixcoin service stopped")

    async def validate_request(self, request: ChunkRequest) -> None:
        """
        Check a parsed request against the current chain state.

        Raises:
            ChunkValidationError: If the deadlines or output address are unacceptable
            RpcError: If the node cannot be asked about the output address
        """
        height = self.context.height.value
        if request.send_by <= height:
            raise ChunkValidationError(
                f"send_by {request.send_by} must be after current height {height}"
            )
        if not await self.context.backend.validate_address(request.output_address):
            raise ChunkValidationError(f"invalid output address: {request.output_address}")

    async def handle_chunk_request(self, data: dict[str, Any]) -> ChunkRequest:
        """
        Validate a client request, issue its escrow address and warrant, and
        register the chunk as receivable.

        Returns:
            The request with escrow_address and warrant filled in

        Raises:
            ServiceStoppingError: If the service is shutting down
            ChunkValidationError: If the request is malformed or out of range
            AddressGenerationError: If no escrow address could be issued
            RpcError: If the node could not validate the output address
        """
        if self.stopping:
            raise ServiceStoppingError("refused request; mixcoin shutting down")

        request = parse_chunk_request(data)
        await self.validate_request(request)

        signed = await self.warrants.issue(request)
        await self.pool.put(PoolLabel.RECEIVABLE, PoolItem.of_request(signed))
        logger.info(f"Registered new chunk at escrow address {signed.escrow_address}")
        return signed

    async def _dispatch_payout(self, release: ScheduledRelease) -> str:
        """
        Pay one chunk to the release's output address.

        The payout is funded by the node wallet; a random chunk is then
        retired from the mixing pool to keep the books balanced.
        """
        amount = self.settings.chunk_size
        logger.info(f"Sending output chunk of {amount:,} sats for {release.escrow_address}")
        txid = await self.context.backend.send_to_address(release.output_address, amount)
        retired = await self.pool.take_random(PoolLabel.MIXING)
        if retired is None:
            logger.warning("Mixing pool was empty when paying out a chunk")
        else:
            logger.debug(f"Retired mixing chunk {retired.key}")
        return txid

    def get_status(self) -> dict[str, Any]:
        return {
            "network": self.settings.network,
            "height": self.context.height.value,
            "pools": self.pool.get_stats(),
            "scheduled_releases": len(self.scheduler),
            "escalated_releases": 0 if self.stopping else len(self.scheduler.escalated()),
            "blocks_processed": self.orchestrator.blocks_processed,
            "public_key": self.public_key_hex,
            "status": "stopping" if self.stopping else "running",
        }
