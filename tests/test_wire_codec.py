from __future__ import annotations

import pytest

from brit.errors import MalformedMessage, VersionMismatch, WireEncodeError
from brit.wire.codec import decode_frame, decode_request, decode_response, encode_request, encode_response
from brit.wire.messages import MatcherResponse, PayerRequest


def _req(**kw) -> PayerRequest:
    base = dict(payer_identifier=bytes(range(20)), reply_public_key=bytes(range(32)))
    base.update(kw)
    return PayerRequest(**base)


def test_absent_replay_date_uses_sentinel_not_epoch_zero() -> None:
    resp = MatcherResponse(replay_date=None, address_list=("1Addr...", "1Bddr..."))
    wire = encode_response(resp)
    assert wire == b"1\nnot-present\n1Addr...\n1Bddr...\n"

    back = decode_response(wire)
    assert back.replay_date is None
    assert back == resp


def test_replay_date_round_trip() -> None:
    resp = MatcherResponse(replay_date=1_400_000_000_123, address_list=["1A", "1B", "1C"])
    back = decode_response(encode_response(resp))
    assert back == resp
    assert hash(back) == hash(resp)
    assert back.address_list == ("1A", "1B", "1C")


def test_empty_address_list_emits_only_version_and_date_rows() -> None:
    wire = encode_response(MatcherResponse(replay_date=200))
    assert wire == b"1\n200\n"
    back = decode_response(wire)
    assert back.address_list == ()
    assert back.replay_date == 200


def test_blank_rows_are_skipped() -> None:
    back = decode_response(b"1\n300\n\n1A\n\n\n1B\n")
    assert back.address_list == ("1A", "1B")


@pytest.mark.parametrize("wire", [b"2\nnot-present\n1A\n", b"0\n100\n", b"2", b"abc\nnot-present\n", b"-1\nxyz\n"])
def test_any_version_other_than_one_is_rejected(wire: bytes) -> None:
    with pytest.raises(VersionMismatch):
        decode_response(wire)


@pytest.mark.parametrize("wire", [b"", b"1", b"1\nyesterday\n1A\n", b"1\n12.5\n", b"\xff\xfe\n"])
def test_malformed_messages(wire: bytes) -> None:
    with pytest.raises(MalformedMessage):
        decode_response(wire)


def test_frame_exposes_items_in_order() -> None:
    frame = decode_frame(b"1\nnot-present\nz\na\n")
    assert frame.version == 1
    assert frame.date is None
    assert frame.items == ("z", "a")


def test_address_with_line_break_cannot_be_encoded() -> None:
    with pytest.raises(WireEncodeError):
        encode_response(MatcherResponse(address_list=("1A\n2\n3",)))


def test_request_round_trip() -> None:
    req = _req(replay_date=200, first_transaction_date=None)
    back = decode_request(encode_request(req))
    assert back == req

    req2 = _req(replay_date=None, first_transaction_date=1_000)
    wire = encode_request(req2)
    assert wire.split(b"\n")[1] == b"not-present"
    assert decode_request(wire) == req2


def test_request_requires_exactly_three_payload_rows() -> None:
    wire = encode_request(_req())
    rows = wire.split(b"\n")
    with pytest.raises(MalformedMessage):
        decode_request(b"\n".join(rows[:3]) + b"\n")


def test_request_identifier_width_is_enforced() -> None:
    short_id = ("ab" * 19).encode()
    wire = b"1\nnot-present\n" + short_id + b"\n" + bytes(range(32)).hex().encode() + b"\nnot-present\n"
    with pytest.raises(MalformedMessage):
        decode_request(wire)

    with pytest.raises(ValueError):
        _req(payer_identifier=b"\x00" * 19)
