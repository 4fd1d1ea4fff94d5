"""
Auditable fee decision.

Each confirmed chunk is either mixed or retained whole as the service
fee. The coin flip is seeded from the client's nonce (fixed at request
time, covered by the warrant) and the hash of the block that confirmed
the deposit (unknown at request time, public afterwards). Neither side
can steer the outcome in advance, and anyone can replay it later.
"""

from __future__ import annotations

import hashlib
import random
from typing import Literal

from mixcoin.models import MAX_FEE_BIPS

SeedCombiner = Literal["or", "sha256"]

_UINT64_MASK = (1 << 64) - 1


def _to_int64(value: int) -> int:
    value &= _UINT64_MASK
    return value - (1 << 64) if value >= (1 << 63) else value


def block_hash_to_int(block_hash: str) -> int:
    """
    Low 64 bits of the block hash read as a big-endian integer, as a signed int64.

    ``block_hash`` is the hex string as reported by the node.
    """
    return _to_int64(int.from_bytes(bytes.fromhex(block_hash), "big"))


def fee_seed(nonce: int, block_hash: str, combiner: SeedCombiner = "sha256") -> int:
    """
    Derive the PRNG seed for a fee decision.

    ``or`` is the legacy combiner (``nonce | hash``); it biases the seed
    towards set bits. ``sha256`` hashes both inputs together and is the
    default.
    """
    if combiner == "or":
        return _to_int64(nonce) | block_hash_to_int(block_hash)
    if combiner == "sha256":
        preimage = _to_int64(nonce).to_bytes(8, "big", signed=True) + bytes.fromhex(block_hash)
        return int.from_bytes(hashlib.sha256(preimage).digest()[:8], "big")
    raise ValueError(f"Unknown seed combiner: {combiner}")


def fee_draw(nonce: int, block_hash: str, combiner: SeedCombiner = "sha256") -> float:
    """The uniform [0, 1) value compared against the fee rate."""
    # Random() seeds from abs(seed), so read the seed as unsigned first
    seed = fee_seed(nonce, block_hash, combiner) & _UINT64_MASK
    return random.Random(seed).random()


def is_fee(nonce: int, block_hash: str, fee_bips: int, combiner: SeedCombiner = "sha256") -> bool:
    """
    Decide whether a confirmed chunk is retained as a fee.

    Pure: identical inputs always give the same answer.

    Args:
        nonce: Client nonce from the chunk request
        block_hash: Hash of the block in which the deposit was harvested
        fee_bips: Fee rate in basis points, clamped to [0, 10000]
        combiner: Seed combiner, see fee_seed()

    Returns:
        True if the chunk is kept as a fee
    """
    fee_bips = max(0, min(MAX_FEE_BIPS, fee_bips))
    if fee_bips == 0:
        return False
    if fee_bips == MAX_FEE_BIPS:
        return True
    return fee_draw(nonce, block_hash, combiner) <= fee_bips * 1.0e-4
