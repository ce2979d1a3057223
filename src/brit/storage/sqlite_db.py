# src/brit/storage/sqlite_db.py
"""
SQLite storage shared by the Matcher address pool and the Payer fee state.

One file per process role (matcher.db / payer.db). Connections are never
shared between threads; every call opens its own. Writers go through
write_tx(), which takes the writer lock up front (BEGIN IMMEDIATE) so a
read-check-write sequence such as a cohort rotation is applied once even with
several Matcher workers on the same file.
"""

from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

SCHEMA_VERSION = 1

_DDL = (
    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);",
    """
    CREATE TABLE IF NOT EXISTS pool_addresses (
      address TEXT PRIMARY KEY,
      activated_at_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_pool_activated ON pool_addresses(activated_at_ms);",
    """
    CREATE TABLE IF NOT EXISTS pool_cohort (
      slot INTEGER PRIMARY KEY,
      address TEXT NOT NULL REFERENCES pool_addresses(address)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS fee_state (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      state_json TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


def _is_locked(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "database is locked" in msg or "database is busy" in msg


class SqliteDB:
    def __init__(self, *, path: str) -> None:
        self.path = str(path)
        # BRIT_SQLITE_BUSY_TIMEOUT_MS bounds both the driver wait and our BEGIN retries.
        self.busy_timeout_ms = max(250, _env_int("BRIT_SQLITE_BUSY_TIMEOUT_MS", 10_000))

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        con = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row
        # WAL: cohort reads are not blocked while a rotation holds the writer lock.
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms};")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    def _begin_immediate(self, con: sqlite3.Connection) -> None:
        deadline = _now_ms() + self.busy_timeout_ms
        attempt = 0
        while True:
            try:
                con.execute("BEGIN IMMEDIATE;")
                return
            except sqlite3.OperationalError as e:
                if not _is_locked(e) or _now_ms() >= deadline:
                    raise
                delay_s = min(0.25, 0.005 * (2 ** min(attempt, 8)))
                time.sleep(delay_s * (0.5 + random.random()))
                attempt += 1

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Commit on clean exit, roll back on any exception (then re-raise)."""
        with self.connection() as con:
            self._begin_immediate(con)
            try:
                yield con
                con.execute("COMMIT;")
            except BaseException:
                con.execute("ROLLBACK;")
                raise

    def init_schema(self) -> None:
        with self.write_tx() as con:
            for stmt in _DDL:
                con.execute(stmt)
            have = self.get_meta(con, "schema_version")
            if have is None:
                self.set_meta(con, "schema_version", str(SCHEMA_VERSION))
            elif have != str(SCHEMA_VERSION):
                raise RuntimeError(
                    f"{self.path}: schema_version {have!r} is not {SCHEMA_VERSION}; refusing to open"
                )

    def get_meta(self, con: sqlite3.Connection, key: str) -> Optional[str]:
        row = con.execute("SELECT value FROM meta WHERE key=?;", (key,)).fetchone()
        return None if row is None else str(row["value"])

    def set_meta(self, con: sqlite3.Connection, key: str, value: str) -> None:
        con.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (key, value),
        )
