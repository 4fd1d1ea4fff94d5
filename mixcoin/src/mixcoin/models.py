"""
Core data models for chunks and pool entries.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mixcoin.errors import ChunkValidationError

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

# Fees are expressed in basis points: 10000 bips = 100%
MAX_FEE_BIPS = 10_000


class PoolLabel(str, Enum):
    RECEIVABLE = "receivable"
    MIXING = "mixing"
    RESERVE = "reserve"


class PoolItemKind(str, Enum):
    REQUEST = "request"
    UTXO = "utxo"


class ChunkRequest(BaseModel):
    """
    A client's request to mix one chunk.

    The first five fields come from the client. ``escrow_address`` and
    ``warrant`` are assigned by the service when the request is accepted;
    the warrant is the hex-encoded DER signature over the canonical
    encoding of every other field.
    """

    nonce: int = Field(..., ge=INT64_MIN, le=INT64_MAX)
    fee: int = Field(..., ge=0, le=MAX_FEE_BIPS)
    send_by: int = Field(..., ge=0)
    return_by: int = Field(..., ge=0)
    output_address: str = Field(..., min_length=1, max_length=128)
    escrow_address: str | None = None
    warrant: str | None = Field(default=None, pattern=r"^[0-9a-f]*$")

    model_config = {"extra": "forbid", "strict": True}

    @field_validator("output_address")
    @classmethod
    def validate_output_address(cls, v: str) -> str:
        if v != v.strip() or any(c.isspace() for c in v):
            raise ValueError("output_address must not contain whitespace")
        return v

    @model_validator(mode="after")
    def validate_deadlines(self) -> ChunkRequest:
        if self.return_by <= self.send_by:
            raise ValueError(
                f"return_by ({self.return_by}) must be greater than send_by ({self.send_by})"
            )
        return self

    def signing_fields(self) -> dict[str, Any]:
        """Fields covered by the warrant signature."""
        return self.model_dump(exclude={"warrant"})


def parse_chunk_request(data: Any) -> ChunkRequest:
    """
    Build a ChunkRequest from untrusted client data.

    Service-assigned fields are rejected: a client cannot choose its own
    escrow address or pre-fill a warrant.

    Raises:
        ChunkValidationError: If the data is malformed or out of range
    """
    if not isinstance(data, dict):
        raise ChunkValidationError("chunk request must be a JSON object")

    for assigned in ("escrow_address", "warrant"):
        if data.get(assigned) is not None:
            raise ChunkValidationError(f"{assigned} is assigned by the service")

    try:
        return ChunkRequest.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise ChunkValidationError(f"invalid chunk request: {details}") from e


@dataclass(frozen=True)
class Utxo:
    """A confirmed deposit sitting at an escrow address."""

    escrow_address: str
    amount: int  # satoshis
    txid: str
    vout: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Utxo:
        return cls(
            escrow_address=data["escrow_address"],
            amount=int(data["amount"]),
            txid=data["txid"],
            vout=int(data["vout"]),
        )


@dataclass(frozen=True)
class PoolItem:
    """
    Tagged pool entry: either a pending chunk request or a received utxo.

    Exactly one of ``request``/``utxo`` is set, matching ``kind``.
    """

    kind: PoolItemKind
    request: ChunkRequest | None = None
    utxo: Utxo | None = None

    def __post_init__(self) -> None:
        if self.kind == PoolItemKind.REQUEST and (self.request is None or self.utxo is not None):
            raise ValueError("request pool item must carry only a request")
        if self.kind == PoolItemKind.UTXO and (self.utxo is None or self.request is not None):
            raise ValueError("utxo pool item must carry only a utxo")

    @classmethod
    def of_request(cls, request: ChunkRequest) -> PoolItem:
        if not request.escrow_address:
            raise ValueError("chunk request has no escrow address assigned")
        return cls(kind=PoolItemKind.REQUEST, request=request)

    @classmethod
    def of_utxo(cls, utxo: Utxo) -> PoolItem:
        return cls(kind=PoolItemKind.UTXO, utxo=utxo)

    @property
    def key(self) -> str:
        """Escrow address this item is stored under."""
        match self.kind:
            case PoolItemKind.REQUEST:
                assert self.request is not None and self.request.escrow_address
                return self.request.escrow_address
            case PoolItemKind.UTXO:
                assert self.utxo is not None
                return self.utxo.escrow_address
        raise ValueError(f"unknown pool item kind: {self.kind}")

    def to_json(self) -> str:
        match self.kind:
            case PoolItemKind.REQUEST:
                assert self.request is not None
                body = self.request.model_dump()
            case PoolItemKind.UTXO:
                assert self.utxo is not None
                body = self.utxo.to_dict()
        return json.dumps({"kind": self.kind.value, "item": body}, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> PoolItem:
        obj = json.loads(raw)
        kind = PoolItemKind(obj["kind"])
        match kind:
            case PoolItemKind.REQUEST:
                return cls.of_request(ChunkRequest.model_validate(obj["item"]))
            case PoolItemKind.UTXO:
                return cls.of_utxo(Utxo.from_dict(obj["item"]))
        raise ValueError(f"unknown pool item kind: {kind}")
