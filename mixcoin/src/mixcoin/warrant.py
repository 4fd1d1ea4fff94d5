"""
Warrants: the service's signed commitment to a chunk's mixing terms.

A warrant is a signature over the canonical JSON encoding of the full
request, escrow address included. Because the encoding sorts keys and
strips whitespace, anyone holding the request fields and the service
public key can rebuild the exact signed bytes and check the signature.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from mixcoin.crypto import KeyPair, sha256, verify_signature
from mixcoin.errors import AddressGenerationError, ChunkValidationError, RpcError, SignatureError
from mixcoin.models import ChunkRequest


def canonical_encoding(fields: ChunkRequest | dict[str, Any]) -> bytes:
    """
    Canonical byte encoding of a request's signed fields.

    The ``warrant`` field is never part of the encoding.
    """
    if isinstance(fields, ChunkRequest):
        payload = fields.signing_fields()
    else:
        payload = {k: v for k, v in fields.items() if k != "warrant"}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "utf-8"
    )


def warrant_digest(request: ChunkRequest) -> bytes:
    """SHA256 of the canonical encoding; the value the warrant commits to."""
    return sha256(canonical_encoding(request))


def verify_warrant(public_key: bytes | str, request: ChunkRequest) -> bool:
    """
    Check a warrant against the exact terms in ``request``.

    Returns False for a missing escrow address, a missing or malformed
    warrant, or any mutated field.
    """
    if not request.escrow_address or not request.warrant:
        return False
    try:
        signature = bytes.fromhex(request.warrant)
    except ValueError:
        return False
    return verify_signature(public_key, canonical_encoding(request), signature)


def require_valid_warrant(public_key: bytes | str, request: ChunkRequest) -> None:
    """
    Raises:
        SignatureError: If the warrant does not verify
    """
    if not verify_warrant(public_key, request):
        raise SignatureError(f"warrant does not verify for escrow {request.escrow_address}")


class WarrantService:
    """
    Issues escrow addresses and signs warrants for validated requests.
    """

    def __init__(self, keypair: KeyPair, new_address: Callable[[], Awaitable[str]]):
        self.keypair = keypair
        self._new_address = new_address

    @property
    def public_key_hex(self) -> str:
        return self.keypair.public_key_hex()

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)

    def verify(self, public_key: bytes | str, message: bytes, signature: bytes) -> bool:
        return verify_signature(public_key, message, signature)

    async def issue(self, request: ChunkRequest) -> ChunkRequest:
        """
        Assign a fresh escrow address to a validated request and sign it.

        The input request is not modified; a new signed copy is returned.

        Raises:
            ChunkValidationError: If the request already carries service fields
            AddressGenerationError: If the node could not produce an address
        """
        if request.escrow_address is not None or request.warrant is not None:
            raise ChunkValidationError("request already has an escrow address or warrant")

        try:
            escrow_address = await self._new_address()
        except RpcError as e:
            raise AddressGenerationError(f"Unable to create escrow address: {e}") from e
        if not escrow_address:
            raise AddressGenerationError("Node returned an empty escrow address")

        assigned = request.model_copy(update={"escrow_address": escrow_address})
        signature = self.sign(canonical_encoding(assigned))
        signed = assigned.model_copy(update={"warrant": signature.hex()})

        logger.debug(f"Issued warrant for escrow {escrow_address}")
        return signed
