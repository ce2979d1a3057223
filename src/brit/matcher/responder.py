# src/brit/matcher/responder.py
"""
BRIT — Matcher responder

Server side of one exchange, stateless across calls:

  RECEIVED -> DECRYPTED -> DECODED -> ALLOCATED -> ENCODED -> ENCRYPTED -> RETURNED

Any decrypt/decode/version failure ends the exchange: the ExchangeError is
raised to the hosting collaborator (brit.api renders it as an HTTP status).
The only shared mutable state touched is the address pool.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from brit.crypto import envelope
from brit.errors import ExchangeError
from brit.log import log_event
from brit.matcher.allocation import Allocation, allocate
from brit.matcher.pool import AddressPool
from brit.wire.codec import decode_request, encode_response
from brit.wire.messages import MatcherResponse, PayerRequest

log = logging.getLogger("brit.matcher")


def _now_ms() -> int:
    return int(time.time() * 1000)


class MatcherResponder:
    def __init__(
        self,
        *,
        private_key: X25519PrivateKey,
        pool: AddressPool,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._private_key = private_key
        self._pool = pool
        self._clock = clock

    def open_request(self, payload: bytes) -> PayerRequest:
        """RECEIVED -> DECRYPTED -> DECODED (version checked by the codec)."""
        plaintext = envelope.decrypt(payload, self._private_key)
        return decode_request(plaintext)

    def allocate(self, req: PayerRequest) -> Allocation:
        return allocate(self._pool, req.replay_date, self._clock())

    def seal_response(self, req: PayerRequest, alloc: Allocation) -> bytes:
        resp = MatcherResponse(replay_date=alloc.replay_date, address_list=alloc.addresses)
        return envelope.encrypt(encode_response(resp), req.reply_public_key)

    def handle_request(self, payload: bytes) -> bytes:
        started = time.monotonic()
        try:
            req = self.open_request(payload)
            alloc = self.allocate(req)
            # A reply key that cannot be agreed with fails here as MalformedMessage.
            out = self.seal_response(req, alloc)
        except ExchangeError as e:
            log_event(log, "matcher_request_rejected", level=logging.WARNING, code=e.code, size=len(payload))
            raise

        log_event(
            log,
            "matcher_request_served",
            cited_replay_date=req.replay_date is not None,
            addresses=len(alloc.addresses),
            empty=alloc.is_empty,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return out
