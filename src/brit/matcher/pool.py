# src/brit/matcher/pool.py
"""
BRIT — Matcher address pool

The pool is the one shared mutable resource on the Matcher side. It owns:
  - the set of payee addresses with their activation timestamps
  - the current cohort (small rotating subset handed to first-contact payers)

Cohort rotation:
  - cohort_size and rotation_ms are deployment policy (MatcherConfig)
  - the first cohort is the newest `cohort_size` activated addresses
  - each rotation advances the window by cohort_size positions through the
    activation-ordered list, wrapping around
  - rotation_ms == 0 disables automatic rotation (operators call set_cohort)

Each transition is applied exactly once: InMemoryAddressPool under a
threading.Lock, SqliteAddressPool inside a BEGIN IMMEDIATE transaction that
re-checks whether the rotation is still due.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

import yaml

from brit.log import log_event
from brit.storage.sqlite_db import SqliteDB

log = logging.getLogger("brit.matcher.pool")

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class PoolAddress:
    address: str
    activated_at_ms: int


@runtime_checkable
class AddressPool(Protocol):
    def current_cohort(self) -> List[PoolAddress]: ...

    def activated_since(self, ts_ms: int) -> List[PoolAddress]: ...


def _sort_key(a: PoolAddress) -> tuple:
    return (a.activated_at_ms, a.address)


def _validate_address(address: str) -> str:
    if not isinstance(address, str) or not address.strip():
        raise ValueError("address must be a non-empty string")
    a = address.strip()
    if any(c.isspace() for c in a):
        raise ValueError("address must not contain whitespace")
    return a


def next_cohort(ordered: Sequence[PoolAddress], current: Sequence[str], size: int) -> List[str]:
    """Pick the cohort following `current` in activation order.

    `ordered` must be sorted by (activated_at_ms, address) and contain only
    activated addresses.
    """
    n = len(ordered)
    if n == 0 or size <= 0:
        return []
    size = min(size, n)

    index = {a.address: i for i, a in enumerate(ordered)}
    positions = [index[a] for a in current if a in index]
    if not positions:
        return [a.address for a in ordered[n - size :]]

    start = (max(positions) + 1) % n
    return [ordered[(start + i) % n].address for i in range(size)]


def _rotation_due(*, now_ms: int, started_ms: Optional[int], rotation_ms: int, have_cohort: bool) -> bool:
    if not have_cohort:
        return True
    if rotation_ms <= 0 or started_ms is None:
        return False
    return now_ms - started_ms >= rotation_ms


class InMemoryAddressPool:
    """Thread-safe in-process pool. Used by tests and single-process Matchers."""

    def __init__(self, *, cohort_size: int = 4, rotation_ms: int = 0, clock: Clock = _now_ms) -> None:
        if cohort_size <= 0:
            raise ValueError("cohort_size must be positive")
        self.cohort_size = int(cohort_size)
        self.rotation_ms = int(rotation_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._addresses: Dict[str, PoolAddress] = {}
        self._cohort: List[str] = []
        self._cohort_started_ms: Optional[int] = None
        self.cohort_epoch = 0

    def add(self, address: str, activated_at_ms: Optional[int] = None) -> PoolAddress:
        a = _validate_address(address)
        ts = self._clock() if activated_at_ms is None else int(activated_at_ms)
        with self._lock:
            existing = self._addresses.get(a)
            if existing is not None:
                if existing.activated_at_ms != ts:
                    raise ValueError(f"address already activated at {existing.activated_at_ms}")
                return existing
            rec = PoolAddress(address=a, activated_at_ms=ts)
            self._addresses[a] = rec
            return rec

    def set_cohort(self, addresses: Iterable[str]) -> None:
        with self._lock:
            chosen = [_validate_address(a) for a in addresses]
            missing = [a for a in chosen if a not in self._addresses]
            if missing:
                raise ValueError(f"cohort addresses not in pool: {missing}")
            self._cohort = chosen
            self._cohort_started_ms = self._clock()
            self.cohort_epoch += 1

    def _activated(self, now_ms: int) -> List[PoolAddress]:
        return sorted((a for a in self._addresses.values() if a.activated_at_ms <= now_ms), key=_sort_key)

    def current_cohort(self) -> List[PoolAddress]:
        now = self._clock()
        with self._lock:
            if _rotation_due(
                now_ms=now,
                started_ms=self._cohort_started_ms,
                rotation_ms=self.rotation_ms,
                have_cohort=bool(self._cohort),
            ):
                chosen = next_cohort(self._activated(now), self._cohort, self.cohort_size)
                if chosen:
                    self._cohort = chosen
                    self._cohort_started_ms = now
                    self.cohort_epoch += 1
                    log_event(log, "cohort_rotated", epoch=self.cohort_epoch, size=len(chosen))
            return [self._addresses[a] for a in self._cohort]

    def activated_since(self, ts_ms: int) -> List[PoolAddress]:
        with self._lock:
            return sorted((a for a in self._addresses.values() if a.activated_at_ms > ts_ms), key=_sort_key)


class SqliteAddressPool:
    """SQLite-backed pool shared by several Matcher workers/processes."""

    def __init__(
        self,
        *,
        db: SqliteDB,
        cohort_size: int = 4,
        rotation_ms: int = 0,
        clock: Clock = _now_ms,
    ) -> None:
        if cohort_size <= 0:
            raise ValueError("cohort_size must be positive")
        self.db = db
        self.db.init_schema()
        self.cohort_size = int(cohort_size)
        self.rotation_ms = int(rotation_ms)
        self._clock = clock

    def add(self, address: str, activated_at_ms: Optional[int] = None) -> PoolAddress:
        a = _validate_address(address)
        ts = self._clock() if activated_at_ms is None else int(activated_at_ms)
        with self.db.write_tx() as con:
            con.execute(
                "INSERT OR IGNORE INTO pool_addresses(address, activated_at_ms) VALUES(?, ?);",
                (a, ts),
            )
            row = con.execute("SELECT activated_at_ms FROM pool_addresses WHERE address=?;", (a,)).fetchone()
            have = int(row["activated_at_ms"])
            if have != ts:
                raise ValueError(f"address already activated at {have}")
        return PoolAddress(address=a, activated_at_ms=ts)

    @staticmethod
    def _read_cohort(con) -> List[PoolAddress]:
        rows = con.execute(
            """
            SELECT c.address AS address, p.activated_at_ms AS activated_at_ms
            FROM pool_cohort c JOIN pool_addresses p ON p.address = c.address
            ORDER BY c.slot ASC;
            """
        ).fetchall()
        return [PoolAddress(address=str(r["address"]), activated_at_ms=int(r["activated_at_ms"])) for r in rows]

    def _started_ms(self, con) -> Optional[int]:
        raw = self.db.get_meta(con, "cohort_started_ms")
        return int(raw) if raw is not None else None

    def _write_cohort(self, con, addresses: Sequence[str], now_ms: int) -> int:
        con.execute("DELETE FROM pool_cohort;")
        con.executemany(
            "INSERT INTO pool_cohort(slot, address) VALUES(?, ?);",
            list(enumerate(addresses)),
        )
        epoch = int(self.db.get_meta(con, "cohort_epoch") or "0") + 1
        self.db.set_meta(con, "cohort_epoch", str(epoch))
        self.db.set_meta(con, "cohort_started_ms", str(int(now_ms)))
        return epoch

    def set_cohort(self, addresses: Iterable[str]) -> None:
        chosen = [_validate_address(a) for a in addresses]
        now = self._clock()
        with self.db.write_tx() as con:
            for a in chosen:
                if con.execute("SELECT 1 FROM pool_addresses WHERE address=?;", (a,)).fetchone() is None:
                    raise ValueError(f"cohort address not in pool: {a}")
            self._write_cohort(con, chosen, now)

    @property
    def cohort_epoch(self) -> int:
        with self.db.connection() as con:
            return int(self.db.get_meta(con, "cohort_epoch") or "0")

    def _due(self, con, now_ms: int) -> bool:
        have = con.execute("SELECT 1 FROM pool_cohort LIMIT 1;").fetchone() is not None
        return _rotation_due(
            now_ms=now_ms,
            started_ms=self._started_ms(con),
            rotation_ms=self.rotation_ms,
            have_cohort=have,
        )

    def current_cohort(self) -> List[PoolAddress]:
        now = self._clock()
        with self.db.connection() as con:
            if not self._due(con, now):
                return self._read_cohort(con)

        with self.db.write_tx() as con:
            # Another writer may have rotated between our read and BEGIN IMMEDIATE.
            if self._due(con, now):
                rows = con.execute(
                    """
                    SELECT address, activated_at_ms FROM pool_addresses
                    WHERE activated_at_ms <= ?
                    ORDER BY activated_at_ms ASC, address ASC;
                    """,
                    (now,),
                ).fetchall()
                ordered = [PoolAddress(address=str(r["address"]), activated_at_ms=int(r["activated_at_ms"])) for r in rows]
                current = [a.address for a in self._read_cohort(con)]
                chosen = next_cohort(ordered, current, self.cohort_size)
                if chosen:
                    epoch = self._write_cohort(con, chosen, now)
                    log_event(log, "cohort_rotated", epoch=epoch, size=len(chosen))
            return self._read_cohort(con)

    def activated_since(self, ts_ms: int) -> List[PoolAddress]:
        with self.db.connection() as con:
            rows = con.execute(
                """
                SELECT address, activated_at_ms FROM pool_addresses
                WHERE activated_at_ms > ?
                ORDER BY activated_at_ms ASC, address ASC;
                """,
                (int(ts_ms),),
            ).fetchall()
        return [PoolAddress(address=str(r["address"]), activated_at_ms=int(r["activated_at_ms"])) for r in rows]


def load_pool_file(path: str) -> List[PoolAddress]:
    """Read a YAML pool seed file.

    Expected shape:
      addresses:
        - {address: "1Abc...", activated_at_ms: 1700000000000}
        - ...
    """
    raw = yaml.safe_load(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("addresses"), list):
        raise ValueError("pool file must contain an 'addresses' list")

    out: List[PoolAddress] = []
    for i, rec in enumerate(raw["addresses"]):
        if not isinstance(rec, dict):
            raise ValueError(f"pool file entry {i} must be a mapping")
        ts = rec.get("activated_at_ms")
        if isinstance(ts, bool) or not isinstance(ts, int):
            raise ValueError(f"pool file entry {i}: activated_at_ms must be an int")
        out.append(PoolAddress(address=_validate_address(str(rec.get("address") or "")), activated_at_ms=ts))
    return out


def seed_pool(pool, entries: Iterable[PoolAddress]) -> int:
    n = 0
    for e in entries:
        pool.add(e.address, e.activated_at_ms)
        n += 1
    return n
