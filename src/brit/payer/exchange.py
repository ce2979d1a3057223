# src/brit/payer/exchange.py
"""
BRIT — Payer side of one exchange

  BUILT -> ENCODED -> ENCRYPTED -> SENT -> (response opened)

Each exchange gets a fresh X25519 reply keypair; its public half rides inside
the encrypted request so the Matcher can seal the response for this exchange
only. Nothing persists between exchanges. Any failure is terminal; retrying
means building a new exchange (FeeService decides that).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from brit.crypto import envelope
from brit.crypto.keys import generate_keypair, public_key_bytes
from brit.errors import ExchangeError
from brit.log import log_event
from brit.matcher.allocation import Allocation
from brit.transport import Transport
from brit.wire.codec import decode_response, encode_request
from brit.wire.messages import MatcherResponse, PayerRequest, TimestampMs

log = logging.getLogger("brit.payer")


class ExchangeState(str, Enum):
    BUILT = "BUILT"
    ENCODED = "ENCODED"
    ENCRYPTED = "ENCRYPTED"
    SENT = "SENT"
    DONE = "DONE"
    FAILED = "FAILED"


class PayerExchange:
    """One request/response round trip. Not reusable."""

    def __init__(self, request: PayerRequest, reply_key: X25519PrivateKey) -> None:
        self.request = request
        self._reply_key = reply_key
        self.state = ExchangeState.BUILT
        self._encoded: Optional[bytes] = None
        self._sealed: Optional[bytes] = None

    def _require(self, state: ExchangeState) -> None:
        if self.state != state:
            raise RuntimeError(f"exchange is {self.state.value}, expected {state.value}")

    def encode(self) -> bytes:
        self._require(ExchangeState.BUILT)
        self._encoded = encode_request(self.request)
        self.state = ExchangeState.ENCODED
        return self._encoded

    def encrypt(self, matcher_public_key: X25519PublicKey) -> bytes:
        self._require(ExchangeState.ENCODED)
        assert self._encoded is not None
        self._sealed = envelope.encrypt(self._encoded, matcher_public_key)
        self._encoded = None
        self.state = ExchangeState.ENCRYPTED
        return self._sealed

    def send(self, transport: Transport) -> bytes:
        self._require(ExchangeState.ENCRYPTED)
        assert self._sealed is not None
        try:
            reply = transport.post(self._sealed)
        except ExchangeError:
            self.state = ExchangeState.FAILED
            raise
        self.state = ExchangeState.SENT
        return reply

    def open_response(self, reply: bytes) -> MatcherResponse:
        self._require(ExchangeState.SENT)
        try:
            resp = decode_response(envelope.decrypt(reply, self._reply_key))
        except ExchangeError:
            self.state = ExchangeState.FAILED
            raise
        self.state = ExchangeState.DONE
        return resp


class PayerRequestBuilder:
    """Client entry point: `request_addresses(prior_replay_date) -> Allocation`."""

    def __init__(
        self,
        *,
        payer_identifier: bytes,
        matcher_public_key: X25519PublicKey,
        transport: Transport,
        first_transaction_date: Optional[TimestampMs] = None,
    ) -> None:
        self.payer_identifier = bytes(payer_identifier)
        self.matcher_public_key = matcher_public_key
        self.transport = transport
        self.first_transaction_date = first_transaction_date

    def build(self, replay_date: Optional[TimestampMs] = None) -> PayerExchange:
        reply_sk, reply_pk = generate_keypair()
        req = PayerRequest(
            payer_identifier=self.payer_identifier,
            reply_public_key=public_key_bytes(reply_pk),
            replay_date=replay_date,
            first_transaction_date=self.first_transaction_date,
        )
        return PayerExchange(req, reply_sk)

    def request_addresses(self, prior_replay_date: Optional[TimestampMs] = None) -> Allocation:
        ex = self.build(prior_replay_date)
        ex.encode()
        ex.encrypt(self.matcher_public_key)
        reply = ex.send(self.transport)
        resp = ex.open_response(reply)

        log_event(
            log,
            "payer_exchange_done",
            addresses=len(resp.address_list),
            has_replay_date=resp.replay_date is not None,
        )
        return Allocation(addresses=resp.address_list, replay_date=resp.replay_date)
