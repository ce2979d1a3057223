from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

Address = str
TimestampMs = int

SUPPORTED_VERSION = 1
NOT_PRESENT = "not-present"

PAYER_ID_BYTES = 20
REPLY_KEY_BYTES = 32


@dataclass(frozen=True, slots=True)
class PayerRequest:
    """What the Payer tells the Matcher (encrypted on the wire).

    - payer_identifier: fixed-width id derived from the wallet seed
    - replay_date: the replay date the Matcher returned last time, if any
    - reply_public_key: X25519 key the response must be encrypted to
    """

    payer_identifier: bytes
    reply_public_key: bytes
    replay_date: Optional[TimestampMs] = None
    first_transaction_date: Optional[TimestampMs] = None
    version: int = SUPPORTED_VERSION

    def __post_init__(self) -> None:
        if len(self.payer_identifier) != PAYER_ID_BYTES:
            raise ValueError(f"payer_identifier must be {PAYER_ID_BYTES} bytes")
        if len(self.reply_public_key) != REPLY_KEY_BYTES:
            raise ValueError(f"reply_public_key must be {REPLY_KEY_BYTES} bytes")


@dataclass(frozen=True, slots=True)
class MatcherResponse:
    """Matcher answer. An empty address_list means "skip this cycle"."""

    replay_date: Optional[TimestampMs] = None
    address_list: Tuple[Address, ...] = field(default_factory=tuple)
    version: int = SUPPORTED_VERSION

    def __post_init__(self) -> None:
        # Accept any iterable of addresses but store an immutable tuple so
        # equality/hash stay structural.
        if not isinstance(self.address_list, tuple):
            object.__setattr__(self, "address_list", tuple(self.address_list))


@dataclass(frozen=True, slots=True)
class WireFrame:
    version: int
    date: Optional[TimestampMs]
    items: Tuple[str, ...] = field(default_factory=tuple)
