"""
Delayed release of mixed chunks.

Each accepted chunk is paid out after an independent random delay drawn
uniformly from [0, return_by - height - 1] blocks, so payout timing says
nothing about deposit timing. Delays are measured in blocks and turned
into timers with a fixed number of seconds per block.

A single loop task owns a heap of pending releases ordered by due time
and dispatches them one at a time. Every pending release is persisted
when it is scheduled and deleted only after a successful payout, so
stopping the scheduler never loses one: it is restored on the next
start.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass

from loguru import logger

from mixcoin.context import BlockchainHeight
from mixcoin.database import KeyValueStore
from mixcoin.errors import SchedulingError
from mixcoin.models import ChunkRequest

SCHEDULE_PREFIX = "schedule:"
ESCALATED_PREFIX = "escalated:"


@dataclass
class ScheduledRelease:
    escrow_address: str
    output_address: str
    release_height: int
    attempts: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> ScheduledRelease:
        obj = json.loads(raw)
        return cls(
            escrow_address=obj["escrow_address"],
            output_address=obj["output_address"],
            release_height=int(obj["release_height"]),
            attempts=int(obj.get("attempts", 0)),
        )


PayoutDispatcher = Callable[[ScheduledRelease], Awaitable[str]]


def generate_delay(return_by: int, current_height: int, rng: random.Random) -> int:
    """
    Draw a release delay in blocks, uniform over [0, return_by - current_height - 1].

    Raises:
        SchedulingError: If return_by leaves no room for a release
    """
    max_delay = return_by - current_height - 1
    if max_delay < 0:
        raise SchedulingError(
            f"return_by {return_by} leaves no release window at height {current_height}"
        )
    return rng.randint(0, max_delay)


class MixScheduler:
    def __init__(
        self,
        height: BlockchainHeight,
        dispatch: PayoutDispatcher,
        database: KeyValueStore | None = None,
        block_interval: float = 600.0,
        max_attempts: int = 5,
        retry_delay: float = 30.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.height = height
        self._dispatch = dispatch
        self._database = database
        self.block_interval = block_interval
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._rng = rng or random.SystemRandom()
        self._clock = clock

        # (due time, tie breaker, release)
        self._heap: list[tuple[float, int, ScheduledRelease]] = []
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def pending(self) -> list[ScheduledRelease]:
        return [entry[2] for entry in sorted(self._heap)]

    def _persist(self, release: ScheduledRelease) -> None:
        if self._database is not None:
            self._database.put(SCHEDULE_PREFIX + release.escrow_address, release.to_json())

    def _unpersist(self, release: ScheduledRelease) -> None:
        if self._database is not None:
            self._database.delete(SCHEDULE_PREFIX + release.escrow_address)

    def _push(self, release: ScheduledRelease, delay_seconds: float) -> None:
        due = self._clock() + delay_seconds
        heapq.heappush(self._heap, (due, next(self._counter), release))
        self._wakeup.set()

    def put(self, request: ChunkRequest, height: int | None = None) -> ScheduledRelease:
        """
        Schedule the payout for an accepted chunk.

        Args:
            request: The accepted chunk request
            height: Height of the block that confirmed the deposit; defaults
                to the current chain height

        Raises:
            SchedulingError: If the request's return_by has already passed
        """
        if not request.escrow_address:
            raise SchedulingError("cannot schedule a chunk without an escrow address")

        current = self.height.value if height is None else height
        delay = generate_delay(request.return_by, current, self._rng)
        release = ScheduledRelease(
            escrow_address=request.escrow_address,
            output_address=request.output_address,
            release_height=current + delay,
        )
        self._persist(release)
        self._push(release, delay * self.block_interval)
        logger.info(
            f"Scheduled release of {release.escrow_address} in {delay} blocks "
            f"(height {release.release_height})"
        )
        return release

    def restore(self) -> int:
        """Re-enqueue releases persisted by a previous run. Returns how many."""
        if self._database is None:
            return 0

        restored = 0
        for key, raw in self._database.items(SCHEDULE_PREFIX):
            try:
                release = ScheduledRelease.from_json(raw)
            except Exception as e:
                logger.error(f"Skipping unreadable scheduled release {key}: {e}")
                continue
            remaining = max(0, release.release_height - self.height.value)
            self._push(release, remaining * self.block_interval)
            restored += 1

        if restored:
            logger.info(f"Restored {restored} scheduled releases")
        return restored

    def escalated(self) -> list[ScheduledRelease]:
        """Releases that exhausted their retries and await an operator."""
        if self._database is None:
            return []
        return [ScheduledRelease.from_json(raw) for _, raw in self._database.items(ESCALATED_PREFIX)]

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())
        logger.info(f"Mix scheduler started with {len(self)} pending releases")

    async def _run(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            timeout: float | None = None
            if self._heap:
                timeout = self._heap[0][0] - self._clock()
                if timeout <= 0:
                    _, _, release = heapq.heappop(self._heap)
                    await self._release(release)
                    continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except TimeoutError:
                pass

    async def _release(self, release: ScheduledRelease) -> None:
        release.attempts += 1
        logger.debug(
            f"Releasing chunk {release.escrow_address} "
            f"(attempt {release.attempts}/{self.max_attempts})"
        )
        try:
            txid = await self._dispatch(release)
        except Exception as e:
            if release.attempts >= self.max_attempts:
                self.escalate(release, e)
                return
            backoff = self.retry_delay * (2 ** (release.attempts - 1))
            logger.error(
                f"Payout for {release.escrow_address} failed: {e}. Retrying in {backoff:.0f}s"
            )
            self._persist(release)
            self._push(release, backoff)
            return

        self._unpersist(release)
        logger.info(f"Released chunk {release.escrow_address} in transaction {txid}")

    def escalate(self, release: ScheduledRelease, error: Exception) -> None:
        """Hand a release to the operator: persist it as escalated and drop it from the schedule."""
        if self._database is not None:
            self._database.put(ESCALATED_PREFIX + release.escrow_address, release.to_json())
        self._unpersist(release)
        logger.critical(
            f"Payout for {release.escrow_address} to {release.output_address} escalated "
            f"after {release.attempts} attempts ({error}). Manual intervention required."
        )

    async def stop(self) -> None:
        """Finish any in-flight payout and stop. Pending releases stay persisted."""
        self._stopping = True
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info(f"Mix scheduler stopped, {len(self)} releases left pending")
