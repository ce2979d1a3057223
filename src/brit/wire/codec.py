# src/brit/wire/codec.py
from __future__ import annotations

import re
from typing import Iterable, Optional, Tuple

from brit.errors import MalformedMessage, VersionMismatch, WireEncodeError
from brit.wire.messages import (
    NOT_PRESENT,
    PAYER_ID_BYTES,
    REPLY_KEY_BYTES,
    SUPPORTED_VERSION,
    MatcherResponse,
    PayerRequest,
    TimestampMs,
    WireFrame,
)

SEPARATOR = "\n"

# Request payload rows, in order.
_REQUEST_ITEMS = 3

_INT_RE = re.compile(r"-?[0-9]+")


def _parse_int(raw: str) -> Optional[int]:
    if not _INT_RE.fullmatch(raw):
        return None
    return int(raw)


def _format_date(date: Optional[TimestampMs]) -> str:
    if date is None:
        return NOT_PRESENT
    if isinstance(date, bool) or not isinstance(date, int):
        raise WireEncodeError(f"date must be int epoch millis, got {type(date).__name__}")
    return str(date)


def _parse_date(raw: str, field: str) -> Optional[TimestampMs]:
    if raw == NOT_PRESENT:
        return None
    v = _parse_int(raw)
    if v is None:
        raise MalformedMessage(f"invalid {field} row")
    return v


def _check_item(item: str) -> str:
    if not isinstance(item, str):
        raise WireEncodeError(f"payload item must be str, got {type(item).__name__}")
    if "\n" in item or "\r" in item:
        raise WireEncodeError("payload item must not contain line breaks")
    return item


def encode_frame(version: int, date: Optional[TimestampMs], items: Iterable[str]) -> bytes:
    rows = [str(int(version)), _format_date(date)]
    rows.extend(_check_item(i) for i in items)
    return "".join(r + SEPARATOR for r in rows).encode("utf-8")


def decode_frame(payload: bytes) -> WireFrame:
    if not payload:
        raise MalformedMessage("empty message")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessage(f"invalid utf-8: {e.reason}") from e

    rows = text.split(SEPARATOR)

    # Version gate comes first: an unknown version is never parsed further.
    version = _parse_int(rows[0])
    if version != SUPPORTED_VERSION:
        raise VersionMismatch(version if version is not None else rows[0][:16], SUPPORTED_VERSION)

    if len(rows) < 2:
        raise MalformedMessage("cannot parse message: require 2 or more rows")

    date = _parse_date(rows[1], "date")
    items = tuple(r for r in rows[2:] if r)
    return WireFrame(version=version, date=date, items=items)


# ---------------------------------------------------------------------
# MatcherResponse
# ---------------------------------------------------------------------


def encode_response(resp: MatcherResponse) -> bytes:
    """Serialise a MatcherResponse.

    Format:
      version
      replayDate | not-present
      address1
      ...
      addressN
    """
    return encode_frame(resp.version, resp.replay_date, resp.address_list)


def decode_response(payload: bytes) -> MatcherResponse:
    frame = decode_frame(payload)
    return MatcherResponse(replay_date=frame.date, address_list=frame.items, version=frame.version)


# ---------------------------------------------------------------------
# PayerRequest
# ---------------------------------------------------------------------


def encode_request(req: PayerRequest) -> bytes:
    items = (
        req.payer_identifier.hex(),
        req.reply_public_key.hex(),
        _format_date(req.first_transaction_date),
    )
    return encode_frame(req.version, req.replay_date, items)


def _hex_field(raw: str, field: str, width: int) -> bytes:
    try:
        b = bytes.fromhex(raw)
    except ValueError as e:
        raise MalformedMessage(f"invalid {field}: not hex") from e
    if len(b) != width:
        raise MalformedMessage(f"invalid {field}: expected {width} bytes, got {len(b)}")
    return b


def _split_request_items(items: Tuple[str, ...]) -> Tuple[str, str, str]:
    if len(items) != _REQUEST_ITEMS:
        raise MalformedMessage(f"payer request must carry {_REQUEST_ITEMS} payload rows, got {len(items)}")
    return items[0], items[1], items[2]


def decode_request(payload: bytes) -> PayerRequest:
    frame = decode_frame(payload)
    payer_hex, reply_hex, first_tx_raw = _split_request_items(frame.items)
    return PayerRequest(
        payer_identifier=_hex_field(payer_hex, "payer_identifier", PAYER_ID_BYTES),
        reply_public_key=_hex_field(reply_hex, "reply_public_key", REPLY_KEY_BYTES),
        replay_date=frame.date,
        first_transaction_date=_parse_date(first_tx_raw, "first_transaction_date"),
        version=frame.version,
    )
