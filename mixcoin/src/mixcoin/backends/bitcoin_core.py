"""
Bitcoin Core RPC blockchain backend.
Uses the node's wallet to issue escrow addresses and fund payouts.
"""

from __future__ import annotations

import asyncio
import os
import random
from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from mixcoin.backends.base import MixcoinBackend, UnspentOutput
from mixcoin.errors import RpcError

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Retries for transient transport failures (timeouts, connection resets)
RPC_MAX_RETRIES = 5
RPC_BASE_DELAY = 0.5  # Base delay in seconds for exponential backoff

SATS_PER_BTC = 100_000_000

# Environment variable to enable sensitive logging (addresses, txids)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


def btc_to_sats(amount: float | str | Decimal) -> int:
    return int((Decimal(str(amount)) * SATS_PER_BTC).to_integral_value())


def sats_to_btc(amount: int) -> Decimal:
    return (Decimal(amount) / SATS_PER_BTC).quantize(Decimal("0.00000001"))


class BitcoinCoreBackend(MixcoinBackend):
    """
    Blockchain backend using Bitcoin Core JSON-RPC.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18332",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        max_retries: int = RPC_MAX_RETRIES,
        base_delay: float = RPC_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.client = client or httpx.AsyncClient(
            timeout=DEFAULT_RPC_TIMEOUT, auth=(rpc_user, rpc_password)
        )
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Transport errors are retried with exponential backoff; errors
        reported by the node itself are not.

        Raises:
            RpcError: On node errors or after exhausting retries
        """
        for attempt in range(self.max_retries):
            self._request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params or [],
            }

            try:
                response = await self.client.post(self.rpc_url, json=payload)
                # Core answers JSON-RPC errors with HTTP 500 and a JSON body
                if response.status_code >= 500 and not response.content:
                    response.raise_for_status()
                data = response.json()

                if "error" in data and data["error"]:
                    error_info = data["error"]
                    error_code = error_info.get("code", "unknown")
                    error_msg = error_info.get("message", str(error_info))
                    raise RpcError(f"RPC error {error_code}: {error_msg}")

                return data.get("result")

            except (httpx.TimeoutException, httpx.TransportError, httpx.HTTPStatusError) as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2**attempt) + random.uniform(0, 0.5)
                    logger.warning(
                        f"RPC call {method} failed ({type(e).__name__}: {e}), "
                        f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"RPC call failed: {method} - {e}")
                raise RpcError(f"RPC call {method} failed: {e}") from e
            except ValueError as e:
                # Malformed JSON body
                logger.error(f"Invalid RPC response for {method}: {e}")
                raise RpcError(f"Invalid RPC response for {method}: {e}") from e

        raise RpcError(f"RPC call {method} failed after {self.max_retries} attempts")

    async def get_block_height(self) -> int:
        height = await self._rpc_call("getblockcount")
        logger.debug(f"Current block height: {height}")
        return int(height)

    async def get_block_hash(self, block_height: int) -> str:
        block_hash = await self._rpc_call("getblockhash", [block_height])
        logger.debug(f"Block hash for height {block_height}: {block_hash}")
        return block_hash

    async def list_unspent(
        self, min_conf: int, max_conf: int, addresses: list[str]
    ) -> list[UnspentOutput]:
        if not addresses:
            return []

        results = await self._rpc_call("listunspent", [min_conf, max_conf, addresses])
        outputs = [
            UnspentOutput(
                address=r.get("address", ""),
                amount=btc_to_sats(r["amount"]),
                txid=r["txid"],
                vout=int(r["vout"]),
                confirmations=int(r.get("confirmations", 0)),
            )
            for r in results or []
        ]
        logger.debug(f"listunspent over {len(addresses)} addresses returned {len(outputs)} UTXOs")
        if SENSITIVE_LOGGING:
            logger.debug(f"Unspent outputs: {outputs}")
        return outputs

    async def send_to_address(self, address: str, amount: int) -> str:
        txid = await self._rpc_call("sendtoaddress", [address, float(sats_to_btc(amount))])
        logger.info(f"Sent {amount:,} sats in transaction {txid}")
        return txid

    async def get_new_address(self) -> str:
        address = await self._rpc_call("getnewaddress")
        if SENSITIVE_LOGGING:
            logger.debug(f"Generated new address: {address}")
        return address

    async def validate_address(self, address: str) -> bool:
        result = await self._rpc_call("validateaddress", [address])
        return bool(result and result.get("isvalid"))

    async def close(self) -> None:
        await self.client.aclose()
