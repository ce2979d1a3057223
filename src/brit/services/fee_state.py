from __future__ import annotations

import json
import random
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Optional, Protocol, Sequence, Tuple

from brit.storage.sqlite_db import SqliteDB
from brit.wire.messages import Address, TimestampMs


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class StoredFeeState:
    """What the Payer remembers between exchanges."""

    replay_date: Optional[TimestampMs] = None
    addresses: Tuple[Address, ...] = field(default_factory=tuple)
    fee_paid_sat: int = 0
    next_fee_send_count: Optional[int] = None

    def to_json(self) -> str:
        d = asdict(self)
        d["addresses"] = list(self.addresses)
        return _canon_json(d)

    @staticmethod
    def from_json(raw: str) -> "StoredFeeState":
        """Raises ValueError for anything that is not a stored fee state."""
        d = json.loads(raw)
        if not isinstance(d, dict):
            raise ValueError("fee_state is not a JSON object")
        nfsc = d.get("next_fee_send_count")
        rd = d.get("replay_date")
        try:
            return StoredFeeState(
                replay_date=int(rd) if rd is not None else None,
                addresses=tuple(str(a) for a in (d.get("addresses") or [])),
                fee_paid_sat=int(d.get("fee_paid_sat") or 0),
                next_fee_send_count=int(nfsc) if nfsc is not None else None,
            )
        except TypeError as e:
            raise ValueError(f"fee_state has a mistyped field: {e}") from e


class FeeStateStore(Protocol):
    def load(self) -> StoredFeeState: ...

    def save(self, st: StoredFeeState) -> None: ...


class InMemoryFeeStateStore:
    def __init__(self, initial: Optional[StoredFeeState] = None) -> None:
        self._lock = threading.Lock()
        self._st = initial or StoredFeeState()

    def load(self) -> StoredFeeState:
        with self._lock:
            return self._st

    def save(self, st: StoredFeeState) -> None:
        with self._lock:
            self._st = st


class SqliteFeeStateStore:
    """Single-row store; the snapshot is overwritten atomically."""

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def load(self) -> StoredFeeState:
        with self._db.connection() as con:
            row = con.execute("SELECT state_json FROM fee_state WHERE id=1;").fetchone()
        if row is None:
            return StoredFeeState()
        return StoredFeeState.from_json(str(row["state_json"]))

    def save(self, st: StoredFeeState) -> None:
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO fee_state(id, state_json, updated_ts_ms)
                VALUES(1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  state_json=excluded.state_json,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (st.to_json(), _now_ms()),
            )


@dataclass(frozen=True, slots=True)
class FeeState:
    """Fee bookkeeping handed to the wallet's send flow.

    - fee_owed_sat: accrued (send_count * fee_per_send) minus what was paid
    - is_due: the wallet should add a fee output to this send
    - next_fee_address: where to pay; a Matcher address when we have one
    """

    using_matcher_address: bool
    next_fee_address: Optional[Address]
    send_count: int
    fee_owed_sat: int
    fee_paid_sat: int
    next_fee_send_count: int

    @property
    def is_due(self) -> bool:
        return self.fee_owed_sat > 0 and self.next_fee_address is not None and self.send_count >= self.next_fee_send_count


def pick_next_send_count(send_count: int, lower: int, upper: int, rng: random.Random) -> int:
    """Randomised so fee outputs don't appear on a fixed, fingerprintable cadence."""
    return int(send_count) + rng.randint(int(lower), int(upper))


def calculate_fee_state(
    *,
    stored: StoredFeeState,
    send_count: int,
    fee_per_send_sat: int,
    fallback_address: Optional[Address],
    next_fee_send_count: int,
    rng: random.Random,
) -> FeeState:
    if send_count < 0:
        raise ValueError("send_count must be >= 0")

    owed = max(0, int(send_count) * int(fee_per_send_sat) - int(stored.fee_paid_sat))

    addresses: Sequence[Address] = stored.addresses
    if addresses:
        address: Optional[Address] = rng.choice(list(addresses))
    else:
        address = fallback_address

    return FeeState(
        using_matcher_address=bool(addresses),
        next_fee_address=address,
        send_count=int(send_count),
        fee_owed_sat=owed,
        fee_paid_sat=int(stored.fee_paid_sat),
        next_fee_send_count=int(next_fee_send_count),
    )


def with_fee_paid(stored: StoredFeeState, amount_sat: int, next_fee_send_count: int) -> StoredFeeState:
    if amount_sat < 0:
        raise ValueError("amount_sat must be >= 0")
    return replace(
        stored,
        fee_paid_sat=int(stored.fee_paid_sat) + int(amount_sat),
        next_fee_send_count=int(next_fee_send_count),
    )
