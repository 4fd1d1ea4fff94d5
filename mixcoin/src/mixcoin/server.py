"""
HTTP API for chunk requests.

Clients POST a JSON chunk request to /chunk and get back either the
signed request (escrow address + warrant) or a structured rejection
``{"error": ..., "kind": ...}``.
"""

from __future__ import annotations

import json
from typing import Any

from aiohttp import web
from loguru import logger

from mixcoin.errors import (
    AddressGenerationError,
    ChunkValidationError,
    MixcoinError,
    PoolClosedError,
    RpcError,
    ServiceStoppingError,
)
from mixcoin.service import MixcoinService

MAX_REQUEST_SIZE = 16 * 1024

_ERROR_STATUS: dict[type[MixcoinError], int] = {
    ChunkValidationError: 400,
    ServiceStoppingError: 503,
    PoolClosedError: 503,
    AddressGenerationError: 503,
    RpcError: 502,
}


def _rejection(error: MixcoinError) -> web.Response:
    status = _ERROR_STATUS.get(type(error), 500)
    return web.json_response({"error": str(error), "kind": error.kind}, status=status)


class MixcoinServer:
    def __init__(self, service: MixcoinService, host: str = "127.0.0.1", port: int = 8090) -> None:
        self.service = service
        self.host = host
        self.port = port
        self.app = web.Application(client_max_size=MAX_REQUEST_SIZE)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_post("/chunk", self._handle_chunk)
        self.app.router.add_get("/pubkey", self._handle_pubkey)
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/status", self._handle_status)

    async def _handle_chunk(self, request: web.Request) -> web.Response:
        try:
            data: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _rejection(ChunkValidationError("request body is not valid JSON"))

        try:
            signed = await self.service.handle_chunk_request(data)
        except MixcoinError as e:
            logger.warning(f"Rejected chunk request: {e}")
            return _rejection(e)

        return web.json_response(signed.model_dump())

    async def _handle_pubkey(self, _request: web.Request) -> web.Response:
        return web.json_response({"public_key": self.service.public_key_hex})

    async def _handle_health(self, _request: web.Request) -> web.Response:
        healthy = self.service.started and not self.service.stopping
        return web.json_response(
            {"status": "healthy" if healthy else "unhealthy"}, status=200 if healthy else 503
        )

    async def _handle_status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.service.get_status())

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info(f"HTTP API listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            logger.info("HTTP API stopped")
