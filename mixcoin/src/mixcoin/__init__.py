"""
mixcoin - Accountable Bitcoin mixing service

Clients deposit fixed-size chunks to single-use escrow addresses and
receive a signed warrant committing the service to the mixing terms.
Confirmed chunks are either kept as a publicly auditable fee or paid out
to the client's output address after a random delay.
"""

__version__ = "0.1.0"

from mixcoin.config import Settings, get_settings
from mixcoin.context import BlockchainHeight, MixcoinContext
from mixcoin.crypto import KeyPair, verify_signature
from mixcoin.errors import (
    AddressGenerationError,
    ChunkValidationError,
    MixcoinError,
    PoolClosedError,
    RpcError,
    SchedulingError,
    ServiceStoppingError,
    SignatureError,
)
from mixcoin.fee import fee_seed, is_fee
from mixcoin.models import ChunkRequest, PoolItem, PoolItemKind, PoolLabel, Utxo
from mixcoin.pool import PoolManager
from mixcoin.scheduler import MixScheduler, ScheduledRelease
from mixcoin.service import MixcoinService
from mixcoin.warrant import WarrantService, canonical_encoding, verify_warrant

__all__ = [
    "AddressGenerationError",
    "BlockchainHeight",
    "ChunkRequest",
    "ChunkValidationError",
    "KeyPair",
    "MixScheduler",
    "MixcoinContext",
    "MixcoinError",
    "MixcoinService",
    "PoolClosedError",
    "PoolItem",
    "PoolItemKind",
    "PoolLabel",
    "PoolManager",
    "RpcError",
    "ScheduledRelease",
    "SchedulingError",
    "ServiceStoppingError",
    "Settings",
    "SignatureError",
    "Utxo",
    "WarrantService",
    "canonical_encoding",
    "fee_seed",
    "get_settings",
    "is_fee",
    "verify_signature",
    "verify_warrant",
]
