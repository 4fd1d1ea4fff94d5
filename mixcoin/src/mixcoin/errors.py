"""
Exception hierarchy for the mixing service.

Request-path errors are returned to the client as structured rejections.
Background errors (RPC, scheduling) are logged and retried, never fatal
to the process.
"""

from __future__ import annotations


class MixcoinError(Exception):
    """Base class for all mixcoin errors."""

    kind = "internal"


class ChunkValidationError(MixcoinError):
    """Malformed or out-of-range chunk request. No state was mutated."""

    kind = "validation"


class AddressGenerationError(MixcoinError):
    """The node could not produce a fresh escrow address for a request."""

    kind = "address_generation"


class RpcError(MixcoinError):
    """Blockchain node query or broadcast failed."""

    kind = "rpc"


class SignatureError(MixcoinError):
    """A warrant failed verification."""

    kind = "signature"


class SchedulingError(MixcoinError):
    """A chunk's return_by deadline had already passed at enqueue time."""

    kind = "scheduling"


class PoolClosedError(MixcoinError):
    """The pool store has been shut down and accepts no new items."""

    kind = "unavailable"


class ServiceStoppingError(MixcoinError):
    """The service is shutting down and refuses new requests."""

    kind = "unavailable"
