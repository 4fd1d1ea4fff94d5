"""
Main entry point for the mixcoin service.
"""

import asyncio
import signal
import sys

from loguru import logger

from mixcoin.backends.bitcoin_core import BitcoinCoreBackend
from mixcoin.config import Settings, get_settings
from mixcoin.database import SqliteKeyValueStore
from mixcoin.server import MixcoinServer
from mixcoin.service import MixcoinService


def setup_logging(level: str) -> None:
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def build_service(settings: Settings) -> MixcoinService:
    backend = BitcoinCoreBackend(
        rpc_url=settings.rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
    )
    database = SqliteKeyValueStore(settings.db_file)
    return MixcoinService(settings, backend, database)


async def run_mixcoin() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("Starting Mixcoin")
    logger.info(f"Network: {settings.network}")
    logger.info(f"Bitcoin RPC: {settings.rpc_url}")
    logger.info(f"Database: {settings.db_file}")
    logger.info(f"Chunk size: {settings.chunk_size:,} sats")
    logger.info(
        f"Confirmation window: [{settings.min_confirmations}, {settings.max_confirmations}]"
    )

    service = build_service(settings)
    server = MixcoinServer(service, settings.http_host, settings.http_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown_handler() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await service.start()
        await server.start()
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Mixcoin cancelled")
    finally:
        # Stop taking requests before draining the service
        await server.stop()
        await service.stop()


def main() -> None:
    try:
        asyncio.run(run_mixcoin())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
