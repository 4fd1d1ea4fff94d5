"""
Pool manager: labeled, concurrency-safe storage for chunks.

Every pool item is keyed by its escrow address and lives under exactly
one label at a time. All operations share a single asyncio lock, which
is plenty for the request rates a mixer sees.

Items are written through to the key/value store under
``pool:<label>:<escrow address>``. ``scan`` leaves the RECEIVABLE record
in place until the chunk is routed by a later ``put``, so a crash between
the two restores the chunk as receivable instead of losing it.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Iterable

from loguru import logger

from mixcoin.database import KeyValueStore
from mixcoin.errors import PoolClosedError
from mixcoin.models import PoolItem, PoolLabel

POOL_PREFIX = "pool:"

# Later stages win when a crash left an address persisted under two labels
_LABEL_PRECEDENCE = {PoolLabel.RECEIVABLE: 0, PoolLabel.MIXING: 1, PoolLabel.RESERVE: 2}


def _db_key(label: PoolLabel, address: str) -> str:
    return f"{POOL_PREFIX}{label.value}:{address}"


class PoolManager:
    def __init__(self, database: KeyValueStore | None = None, rng: random.Random | None = None):
        self._pools: dict[PoolLabel, dict[str, PoolItem]] = {label: {} for label in PoolLabel}
        self._lock = asyncio.Lock()
        self._database = database
        self._rng = rng or random.SystemRandom()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise PoolClosedError("pool is shut down")

    def _persist(self, label: PoolLabel, item: PoolItem) -> None:
        if self._database is not None:
            self._database.put(_db_key(label, item.key), item.to_json())

    def _unpersist(self, label: PoolLabel, address: str) -> None:
        if self._database is not None:
            self._database.delete(_db_key(label, address))

    async def put(self, label: PoolLabel, item: PoolItem) -> None:
        """
        Store item under label, moving it out of any other label.

        Raises:
            PoolClosedError: After shutdown()
        """
        async with self._lock:
            self._check_open()
            key = item.key
            for other in PoolLabel:
                if other == label:
                    continue
                if self._pools[other].pop(key, None) is not None:
                    logger.debug(f"Moving {key} from {other.value} to {label.value}")
                self._unpersist(other, key)
            self._pools[label][key] = item
            self._persist(label, item)

    async def scan(self, addresses: Iterable[str]) -> list[PoolItem]:
        """
        Remove and return the RECEIVABLE items at the given addresses.

        Unknown addresses are skipped. Scanning the same addresses again
        returns nothing.
        """
        async with self._lock:
            self._check_open()
            receivable = self._pools[PoolLabel.RECEIVABLE]
            found: list[PoolItem] = []
            for address in addresses:
                item = receivable.pop(address, None)
                if item is not None:
                    found.append(item)
            return found

    async def filter(
        self,
        predicate: Callable[[PoolItem], bool],
        labels: Iterable[PoolLabel] = (PoolLabel.RECEIVABLE,),
    ) -> list[PoolItem]:
        """Remove every item in labels for which predicate is False; returns the removed items."""
        async with self._lock:
            self._check_open()
            removed: list[PoolItem] = []
            for label in labels:
                pool = self._pools[label]
                for key, item in list(pool.items()):
                    if not predicate(item):
                        del pool[key]
                        self._unpersist(label, key)
                        removed.append(item)
            return removed

    async def remove(self, label: PoolLabel, address: str) -> PoolItem | None:
        """Drop the item at address from label, in memory and on disk."""
        async with self._lock:
            self._check_open()
            item = self._pools[label].pop(address, None)
            self._unpersist(label, address)
            return item

    async def receiving_keys(self) -> list[str]:
        """Snapshot of escrow addresses still awaiting a deposit."""
        async with self._lock:
            return list(self._pools[PoolLabel.RECEIVABLE])

    async def take_random(self, label: PoolLabel) -> PoolItem | None:
        """Remove and return a uniformly chosen item from label, or None if empty."""
        async with self._lock:
            self._check_open()
            pool = self._pools[label]
            if not pool:
                return None
            key = self._rng.choice(sorted(pool))
            item = pool.pop(key)
            self._unpersist(label, key)
            return item

    async def get(self, label: PoolLabel, address: str) -> PoolItem | None:
        async with self._lock:
            return self._pools[label].get(address)

    async def items(self, label: PoolLabel) -> list[PoolItem]:
        async with self._lock:
            return list(self._pools[label].values())

    def count(self, label: PoolLabel | None = None) -> int:
        if label is not None:
            return len(self._pools[label])
        return sum(len(pool) for pool in self._pools.values())

    def get_stats(self) -> dict[str, int]:
        return {label.value: len(pool) for label, pool in self._pools.items()}

    async def bootstrap(self) -> int:
        """
        Reload persisted items into memory. Returns the number of items loaded.
        """
        if self._database is None:
            return 0

        async with self._lock:
            self._check_open()
            loaded: dict[str, tuple[PoolLabel, PoolItem]] = {}
            for db_key, raw in self._database.items(POOL_PREFIX):
                try:
                    label_value, address = db_key[len(POOL_PREFIX) :].split(":", 1)
                    label = PoolLabel(label_value)
                    item = PoolItem.from_json(raw)
                except Exception as e:
                    logger.error(f"Skipping unreadable pool record {db_key}: {e}")
                    continue
                if item.key != address:
                    logger.error(f"Pool record {db_key} holds item for {item.key}, skipping")
                    continue

                previous = loaded.get(address)
                if previous is not None:
                    prev_label = previous[0]
                    if _LABEL_PRECEDENCE[prev_label] >= _LABEL_PRECEDENCE[label]:
                        self._unpersist(label, address)
                        continue
                    self._unpersist(prev_label, address)
                loaded[address] = (label, item)

            for address, (label, item) in loaded.items():
                self._pools[label][address] = item

            logger.info(f"Restored {len(loaded)} pool items: {self.get_stats()}")
            return len(loaded)

    async def shutdown(self) -> None:
        """Stop accepting new items once in-flight operations have finished."""
        async with self._lock:
            self._closed = True
        logger.info("Pool shut down")
