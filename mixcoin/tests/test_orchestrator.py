"""
Tests for per-block chunk processing.
"""

import asyncio
import random

import pytest
from conftest import TEST_BLOCK_HASH

from mixcoin.backends.base import UnspentOutput
from mixcoin.context import BlockchainHeight, MixcoinContext
from mixcoin.models import ChunkRequest, PoolItem, PoolLabel
from mixcoin.errors import SchedulingError
from mixcoin.orchestrator import Orchestrator
from mixcoin.pool import PoolManager
from mixcoin.scheduler import MixScheduler


async def _no_dispatch(release):
    raise AssertionError("scheduler is not running in these tests")


@pytest.fixture
def orchestrator(settings, backend, database):
    context = MixcoinContext(
        settings=settings,
        backend=backend,
        database=database,
        pool=PoolManager(database),
        height=BlockchainHeight(90),
    )
    scheduler = MixScheduler(
        context.height, _no_dispatch, database, block_interval=600.0, rng=random.Random(3)
    )
    return Orchestrator(context, scheduler)


async def register(
    orchestrator, escrow: str, fee: int = 0, send_by: int = 100, return_by: int | None = None
) -> ChunkRequest:
    request = ChunkRequest(
        nonce=7,
        fee=fee,
        send_by=send_by,
        return_by=send_by + 10 if return_by is None else return_by,
        output_address="A",
        escrow_address=escrow,
        warrant="00",
    )
    await orchestrator.context.pool.put(PoolLabel.RECEIVABLE, PoolItem.of_request(request))
    return request


@pytest.mark.asyncio
async def test_confirmed_deposit_moves_to_mixing(orchestrator, backend):
    await register(orchestrator, "E")
    utxo = backend.deposit("E", 1_000_000, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)

    pool = orchestrator.context.pool
    assert await pool.receiving_keys() == []
    mixed = await pool.get(PoolLabel.MIXING, "E")
    assert mixed is not None
    assert mixed.utxo.txid == utxo.txid
    assert mixed.utxo.amount == 1_000_000

    pending = orchestrator.scheduler.pending()
    assert len(pending) == 1
    assert pending[0].escrow_address == "E"
    assert pending[0].output_address == "A"
    assert 95 <= pending[0].release_height <= 95 + 14

    assert backend.list_unspent_calls == [(6, 9999, ["E"])]
    assert orchestrator.context.height.value == 95
    assert orchestrator.blocks_processed == 1


@pytest.mark.asyncio
async def test_full_fee_goes_to_reserve(orchestrator, backend):
    await register(orchestrator, "E", fee=10_000)
    backend.deposit("E", 1_000_000, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)

    assert await orchestrator.context.pool.get(PoolLabel.RESERVE, "E") is not None
    assert orchestrator.context.pool.count(PoolLabel.MIXING) == 0
    assert len(orchestrator.scheduler) == 0


@pytest.mark.asyncio
async def test_expired_chunk_is_pruned(orchestrator, database):
    await register(orchestrator, "E", send_by=100)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 100)
    assert await orchestrator.context.pool.receiving_keys() == ["E"]

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 101)
    assert await orchestrator.context.pool.receiving_keys() == []
    assert database.get("pool:receivable:E") is None


@pytest.mark.asyncio
async def test_prune_runs_before_promotion(orchestrator, backend):
    await register(orchestrator, "E", send_by=100)
    backend.deposit("E", 1_000_000, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 101)

    assert orchestrator.context.pool.count() == 0
    assert len(orchestrator.scheduler) == 0


@pytest.mark.asyncio
async def test_rpc_failure_skips_block(orchestrator, backend):
    await register(orchestrator, "E")
    backend.deposit("E", 1_000_000, confirmations=6)
    backend.fail_list_unspent = True

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)
    assert await orchestrator.context.pool.receiving_keys() == ["E"]
    assert orchestrator.blocks_processed == 0

    backend.fail_list_unspent = False
    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 96)
    assert await orchestrator.context.pool.get(PoolLabel.MIXING, "E") is not None


@pytest.mark.asyncio
async def test_repeated_observation_is_idempotent(orchestrator, backend):
    await register(orchestrator, "E")
    backend.deposit("E", 1_000_000, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)
    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 96)

    assert len(orchestrator.scheduler) == 1
    assert orchestrator.context.pool.get_stats() == {"receivable": 0, "mixing": 1, "reserve": 0}
    # Nothing left to ask the node about on the second block
    assert len(backend.list_unspent_calls) == 1


@pytest.mark.asyncio
async def test_unconfirmed_deposit_waits(orchestrator, backend):
    await register(orchestrator, "E")
    deposit = backend.deposit("E", 1_000_000, confirmations=5)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)
    assert await orchestrator.context.pool.receiving_keys() == ["E"]

    deposit.confirmations = 6
    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 96)
    assert await orchestrator.context.pool.receiving_keys() == []


@pytest.mark.asyncio
async def test_short_deposit_is_ignored(orchestrator, backend):
    await register(orchestrator, "E")
    backend.deposit("E", 999_999, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)
    assert await orchestrator.context.pool.receiving_keys() == ["E"]


@pytest.mark.asyncio
async def test_stale_block_is_ignored(orchestrator, backend):
    await register(orchestrator, "E")
    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)
    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 94)

    assert orchestrator.context.height.value == 95
    assert len(backend.list_unspent_calls) == 1


def test_is_valid_received(orchestrator):
    def output(amount, confirmations):
        return UnspentOutput("E", amount, "aa" * 32, 0, confirmations)

    assert orchestrator.is_valid_received(output(1_000_000, 6))
    assert orchestrator.is_valid_received(output(2_000_000, 9999))
    assert not orchestrator.is_valid_received(output(1_000_000, 5))
    assert not orchestrator.is_valid_received(output(1_000_000, 10_000))
    assert not orchestrator.is_valid_received(output(999_999, 6))


@pytest.mark.asyncio
async def test_find_deposits_keeps_first_output(orchestrator, backend):
    await register(orchestrator, "E")
    first = backend.deposit("E", 1_000_000, confirmations=6)
    backend.deposit("E", 1_000_000, confirmations=7)
    backend.deposit("other", 1_000_000, confirmations=6)

    received = await orchestrator.find_deposits()
    assert list(received) == ["E"]
    assert received["E"].txid == first.txid


@pytest.mark.asyncio
async def test_delay_counts_from_confirming_block(orchestrator, backend):
    """A later block advancing the tip mid-handler must not shrink the release window."""
    await register(orchestrator, "E", send_by=100, return_by=101)
    backend.deposit("E", 1_000_000, confirmations=6)
    backend.list_unspent_gate = asyncio.Event()

    handler = asyncio.create_task(orchestrator.on_block_connected(TEST_BLOCK_HASH, 100))
    await backend.list_unspent_entered.wait()
    # Overlapping handler for the next block moves the shared height on
    orchestrator.context.height.update(101)
    backend.list_unspent_gate.set()
    await handler

    pending = orchestrator.scheduler.pending()
    assert [r.escrow_address for r in pending] == ["E"]
    assert pending[0].release_height == 100
    assert await orchestrator.context.pool.get(PoolLabel.MIXING, "E") is not None
    assert orchestrator.scheduler.escalated() == []


@pytest.mark.asyncio
async def test_unschedulable_chunk_is_escalated(orchestrator, backend, database, monkeypatch):
    def refuse(request, height=None):
        raise SchedulingError("no release window")

    monkeypatch.setattr(orchestrator.scheduler, "put", refuse)
    await register(orchestrator, "E")
    backend.deposit("E", 1_000_000, confirmations=6)

    await orchestrator.on_block_connected(TEST_BLOCK_HASH, 95)

    escalated = orchestrator.scheduler.escalated()
    assert [(r.escrow_address, r.output_address, r.release_height) for r in escalated] == [
        ("E", "A", 95)
    ]
    # Its utxo can no longer be retired to fund another payout
    assert await orchestrator.context.pool.take_random(PoolLabel.MIXING) is None
    assert list(database.items("pool:")) == []
