"""
Tests for mixcoin.models
"""

import pytest

from mixcoin.errors import ChunkValidationError
from mixcoin.models import (
    INT64_MAX,
    ChunkRequest,
    PoolItem,
    PoolItemKind,
    Utxo,
    parse_chunk_request,
)


def test_parse_valid_request(chunk_data):
    request = parse_chunk_request(chunk_data)
    assert request.nonce == 1
    assert request.fee == 0
    assert request.escrow_address is None
    assert request.warrant is None


@pytest.mark.parametrize("fee", [-1, 10_001])
def test_fee_out_of_range_rejected(chunk_data, fee):
    chunk_data["fee"] = fee
    with pytest.raises(ChunkValidationError, match="fee"):
        parse_chunk_request(chunk_data)


def test_fee_bounds_accepted(chunk_data):
    for fee in (0, 10_000):
        chunk_data["fee"] = fee
        assert parse_chunk_request(chunk_data).fee == fee


def test_nonce_must_fit_int64(chunk_data):
    chunk_data["nonce"] = INT64_MAX + 1
    with pytest.raises(ChunkValidationError, match="nonce"):
        parse_chunk_request(chunk_data)


def test_return_by_must_follow_send_by(chunk_data):
    chunk_data["return_by"] = chunk_data["send_by"]
    with pytest.raises(ChunkValidationError, match="return_by"):
        parse_chunk_request(chunk_data)


def test_missing_field_rejected(chunk_data):
    del chunk_data["output_address"]
    with pytest.raises(ChunkValidationError, match="output_address"):
        parse_chunk_request(chunk_data)


def test_unknown_field_rejected(chunk_data):
    chunk_data["extra"] = "x"
    with pytest.raises(ChunkValidationError):
        parse_chunk_request(chunk_data)


def test_string_numbers_rejected(chunk_data):
    """Numeric fields are not coerced from strings."""
    chunk_data["send_by"] = "100"
    with pytest.raises(ChunkValidationError, match="send_by"):
        parse_chunk_request(chunk_data)


def test_whitespace_in_output_address_rejected(chunk_data):
    chunk_data["output_address"] = "tb1q abc"
    with pytest.raises(ChunkValidationError, match="whitespace"):
        parse_chunk_request(chunk_data)


@pytest.mark.parametrize("field", ["escrow_address", "warrant"])
def test_client_cannot_set_service_fields(chunk_data, field):
    chunk_data[field] = "ab"
    with pytest.raises(ChunkValidationError, match="assigned by the service"):
        parse_chunk_request(chunk_data)


def test_non_object_rejected():
    with pytest.raises(ChunkValidationError, match="JSON object"):
        parse_chunk_request([1, 2, 3])


def test_signing_fields_exclude_warrant(chunk_data):
    request = ChunkRequest(**chunk_data, escrow_address="E", warrant="abcd")
    fields = request.signing_fields()
    assert "warrant" not in fields
    assert fields["escrow_address"] == "E"


class TestPoolItem:
    def test_request_item_keyed_by_escrow(self, chunk_data):
        item = PoolItem.of_request(ChunkRequest(**chunk_data, escrow_address="E1"))
        assert item.kind == PoolItemKind.REQUEST
        assert item.key == "E1"

    def test_request_without_escrow_rejected(self, chunk_data):
        with pytest.raises(ValueError, match="escrow"):
            PoolItem.of_request(ChunkRequest(**chunk_data))

    def test_utxo_item_keyed_by_escrow(self):
        item = PoolItem.of_utxo(Utxo("E2", 1_000_000, "aa" * 32, 1))
        assert item.kind == PoolItemKind.UTXO
        assert item.key == "E2"

    def test_kind_must_match_payload(self):
        with pytest.raises(ValueError):
            PoolItem(kind=PoolItemKind.UTXO)
        with pytest.raises(ValueError):
            PoolItem(kind=PoolItemKind.REQUEST, utxo=Utxo("E", 1, "aa", 0))

    def test_json_round_trip_request(self, chunk_data):
        item = PoolItem.of_request(ChunkRequest(**chunk_data, escrow_address="E3", warrant="00ff"))
        restored = PoolItem.from_json(item.to_json())
        assert restored == item

    def test_json_round_trip_utxo(self):
        item = PoolItem.of_utxo(Utxo("E4", 2_500_000, "bb" * 32, 3))
        assert PoolItem.from_json(item.to_json()) == item
