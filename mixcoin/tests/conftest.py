"""
Pytest configuration and fixtures for mixcoin tests.
"""

from __future__ import annotations

import asyncio
import itertools

import pytest
from coincurve import PrivateKey

from mixcoin.backends.base import MixcoinBackend, UnspentOutput
from mixcoin.config import Settings
from mixcoin.crypto import KeyPair
from mixcoin.database import MemoryKeyValueStore
from mixcoin.errors import RpcError

# Stable block hash used across tests (regtest genesis)
TEST_BLOCK_HASH = "0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206"


class FakeBackend(MixcoinBackend):
    """In-memory stand-in for a wallet-enabled node."""

    def __init__(self, height: int = 90):
        self.height = height
        self.block_hashes: dict[int, str] = {}
        self.unspent: list[UnspentOutput] = []
        self.sent: list[tuple[str, int]] = []
        self.list_unspent_calls: list[tuple[int, int, list[str]]] = []
        self.invalid_addresses: set[str] = set()
        self.fail_list_unspent = False
        self.fail_new_address = False
        self.send_failures = 0
        # When set, list_unspent blocks until the gate opens
        self.list_unspent_gate: asyncio.Event | None = None
        self.list_unspent_entered = asyncio.Event()
        self.closed = False
        self._address_counter = itertools.count(1)
        self._txid_counter = itertools.count(1)

    async def get_block_height(self) -> int:
        return self.height

    async def get_block_hash(self, block_height: int) -> str:
        return self.block_hashes.get(block_height, f"{block_height:064x}")

    async def list_unspent(
        self, min_conf: int, max_conf: int, addresses: list[str]
    ) -> list[UnspentOutput]:
        self.list_unspent_calls.append((min_conf, max_conf, list(addresses)))
        self.list_unspent_entered.set()
        if self.list_unspent_gate is not None:
            await self.list_unspent_gate.wait()
        if self.fail_list_unspent:
            raise RpcError("listunspent failed")
        return [
            u
            for u in self.unspent
            if u.address in addresses and min_conf <= u.confirmations <= max_conf
        ]

    async def send_to_address(self, address: str, amount: int) -> str:
        if self.send_failures > 0:
            self.send_failures -= 1
            raise RpcError("sendtoaddress failed")
        self.sent.append((address, amount))
        return f"{next(self._txid_counter):064x}"

    async def get_new_address(self) -> str:
        if self.fail_new_address:
            raise RpcError("getnewaddress failed")
        return f"tb1qescrow{next(self._address_counter):04d}"

    async def validate_address(self, address: str) -> bool:
        return bool(address) and address not in self.invalid_addresses

    async def close(self) -> None:
        self.closed = True

    def deposit(self, address: str, amount: int, confirmations: int) -> UnspentOutput:
        utxo = UnspentOutput(
            address=address,
            amount=amount,
            txid=f"{len(self.unspent) + 1:064x}",
            vout=0,
            confirmations=confirmations,
        )
        self.unspent.append(utxo)
        return utxo


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        network="regtest",
        chunk_size=1_000_000,
        min_confirmations=6,
        block_interval=0.0,
        poll_interval=0.01,
        payout_max_attempts=3,
        payout_retry_delay=0.0,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(height=90)


@pytest.fixture
def database() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def keypair() -> KeyPair:
    return KeyPair(PrivateKey())


@pytest.fixture
def chunk_data() -> dict:
    return {
        "nonce": 1,
        "fee": 0,
        "send_by": 100,
        "return_by": 110,
        "output_address": "A",
    }
