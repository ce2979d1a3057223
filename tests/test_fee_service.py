from __future__ import annotations

import random
import sqlite3
from typing import List, Optional

import pytest

from brit.config import load_payer_config
from brit.crypto.keys import derive_payer_identifier
from brit.errors import DecryptionFailure, TransportFailure, VersionMismatch
from brit.matcher.allocation import EMPTY, Allocation
from brit.matcher.pool import InMemoryAddressPool
from brit.matcher.responder import MatcherResponder
from brit.services.fee_service import FeeService
from brit.services.fee_state import InMemoryFeeStateStore, SqliteFeeStateStore, StoredFeeState
from brit.storage.sqlite_db import SqliteDB
from brit.testing.keytools import deterministic_seed, deterministic_x25519_keypair
from brit.transport import CallableTransport
from brit.transport_http import HttpTransport


class _ScriptedExchange:
    def __init__(self, outcomes: list) -> None:
        self._outcomes = list(outcomes)
        self.cited: List[Optional[int]] = []

    def request_addresses(self, prior_replay_date: Optional[int] = None) -> Allocation:
        self.cited.append(prior_replay_date)
        out = self._outcomes.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


def _svc(exchange, **kw) -> tuple[FeeService, list]:
    sleeps: list = []
    kw.setdefault("sleep", sleeps.append)
    return FeeService(exchange=exchange, **kw), sleeps


def test_retries_transport_failures_with_backoff() -> None:
    ex = _ScriptedExchange([TransportFailure("down"), TransportFailure("down"), Allocation(("B",), 200)])
    svc, sleeps = _svc(ex, max_attempts=3, backoff_base_ms=500)

    assert svc.request_addresses(None) == Allocation(("B",), 200)
    assert sleeps == [0.5, 1.0]
    assert len(ex.cited) == 3


def test_gives_up_after_max_attempts() -> None:
    ex = _ScriptedExchange([TransportFailure("down")] * 3)
    svc, sleeps = _svc(ex, max_attempts=3, backoff_base_ms=500)

    with pytest.raises(TransportFailure):
        svc.request_addresses(None)
    assert len(ex.cited) == 3
    assert len(sleeps) == 2


def test_backoff_is_capped() -> None:
    svc, _ = _svc(_ScriptedExchange([]), backoff_base_ms=500, backoff_cap_ms=1500)
    assert [svc._compute_backoff_ms(a) for a in (1, 2, 3, 4)] == [500, 1000, 1500, 1500]


@pytest.mark.parametrize(
    "err",
    [
        DecryptionFailure("bad"),
        VersionMismatch("2", 1),
        TransportFailure("matcher returned HTTP 409", status=409),
        TransportFailure("matcher returned HTTP 400", status=400),
    ],
)
def test_permanent_errors_are_not_retried(err) -> None:
    ex = _ScriptedExchange([err, Allocation(("B",), 200)])
    svc, sleeps = _svc(ex, max_attempts=5)

    with pytest.raises(type(err)):
        svc.request_addresses(None)
    assert len(ex.cited) == 1
    assert sleeps == []


def test_refresh_stores_and_cites_replay_date() -> None:
    ex = _ScriptedExchange([Allocation(("B",), 200), Allocation(("B", "C"), 300)])
    store = InMemoryFeeStateStore()
    svc, _ = _svc(ex, store=store)

    assert svc.refresh() == Allocation(("B",), 200)
    assert store.load().replay_date == 200
    assert store.load().addresses == ("B",)

    svc.refresh()
    assert ex.cited == [None, 200]
    assert store.load().replay_date == 300
    assert store.load().addresses == ("B", "C")


def test_refresh_failure_returns_none_and_keeps_state() -> None:
    store = InMemoryFeeStateStore(StoredFeeState(replay_date=200, addresses=("B",)))
    ex = _ScriptedExchange([DecryptionFailure("bad"), RuntimeError("boom")])
    svc, _ = _svc(ex, store=store, max_attempts=1)

    assert svc.refresh() is None
    assert svc.refresh() is None
    assert store.load() == StoredFeeState(replay_date=200, addresses=("B",))


def test_empty_allocation_leaves_state_alone() -> None:
    store = InMemoryFeeStateStore(StoredFeeState(replay_date=200, addresses=("B",)))
    svc, _ = _svc(_ScriptedExchange([EMPTY]), store=store)

    assert svc.refresh() == EMPTY
    assert store.load().replay_date == 200


def test_refresh_async_does_not_block_caller() -> None:
    ex = _ScriptedExchange([Allocation(("B",), 200)])
    svc, _ = _svc(ex)
    try:
        fut = svc.refresh_async()
        assert fut.result(timeout=5) == Allocation(("B",), 200)
    finally:
        svc.close()


def test_fee_state_uses_matcher_addresses_when_known() -> None:
    store = InMemoryFeeStateStore(StoredFeeState(replay_date=200, addresses=("B", "C")))
    svc, _ = _svc(
        _ScriptedExchange([]),
        store=store,
        fee_per_send_sat=10_000,
        next_send_lower=2,
        next_send_upper=2,
        rng=random.Random(7),
    )

    st = svc.calculate_fee_state(1)
    assert st.using_matcher_address is True
    assert st.next_fee_address in {"B", "C"}
    assert st.fee_owed_sat == 10_000
    assert st.next_fee_send_count == 2
    assert st.is_due is False

    assert svc.calculate_fee_state(2).is_due is True

    stored = svc.record_fee_paid(20_000, send_count=2)
    assert stored.fee_paid_sat == 20_000
    assert stored.next_fee_send_count == 4

    st = svc.calculate_fee_state(3)
    assert st.fee_owed_sat == 10_000
    assert st.is_due is False


def test_fee_state_falls_back_without_matcher_addresses() -> None:
    svc, _ = _svc(_ScriptedExchange([]), fallback_fee_address="1Fallback", next_send_lower=1, next_send_upper=1)

    st = svc.calculate_fee_state(5)
    assert st.using_matcher_address is False
    assert st.next_fee_address == "1Fallback"
    assert st.is_due is True

    no_fallback, _ = _svc(_ScriptedExchange([]))
    assert no_fallback.calculate_fee_state(50).is_due is False


def test_bad_fee_inputs_raise() -> None:
    svc, _ = _svc(_ScriptedExchange([]))
    with pytest.raises(ValueError):
        svc.calculate_fee_state(-1)
    with pytest.raises(ValueError):
        svc.record_fee_paid(-5, send_count=1)
    with pytest.raises(ValueError):
        FeeService(exchange=_ScriptedExchange([]), next_send_lower=5, next_send_upper=4)


def test_sqlite_fee_state_survives_reopen(tmp_path) -> None:
    path = str(tmp_path / "payer.db")
    svc, _ = _svc(_ScriptedExchange([Allocation(("B",), 200)]), store=SqliteFeeStateStore(db=SqliteDB(path=path)))
    svc.refresh()
    svc.record_fee_paid(10_000, send_count=1)

    again = SqliteFeeStateStore(db=SqliteDB(path=path)).load()
    assert again.replay_date == 200
    assert again.addresses == ("B",)
    assert again.fee_paid_sat == 10_000
    assert again.next_fee_send_count is not None


def test_transient_http_statuses_are_retried() -> None:
    ex = _ScriptedExchange(
        [
            TransportFailure("matcher returned HTTP 503", status=503),
            TransportFailure("matcher returned HTTP 429", status=429),
            Allocation(("B",), 200),
        ]
    )
    svc, sleeps = _svc(ex, max_attempts=3)

    assert svc.request_addresses(None) == Allocation(("B",), 200)
    assert len(sleeps) == 2


def _corrupt_store(path: str) -> SqliteFeeStateStore:
    db = SqliteDB(path=path)
    store = SqliteFeeStateStore(db=db)
    with db.write_tx() as con:
        con.execute("INSERT INTO fee_state(id, state_json, updated_ts_ms) VALUES(1, 'not json', 0);")
    return store


def test_refresh_survives_corrupt_stored_state(tmp_path) -> None:
    store = _corrupt_store(str(tmp_path / "payer.db"))
    ex = _ScriptedExchange([Allocation(("B",), 200)])
    svc, _ = _svc(ex, store=store)

    assert svc.refresh() == Allocation(("B",), 200)
    assert ex.cited == [None]
    assert store.load().replay_date == 200
    assert store.load().addresses == ("B",)


def test_fee_state_survives_corrupt_stored_state(tmp_path) -> None:
    store = _corrupt_store(str(tmp_path / "payer.db"))
    svc, _ = _svc(_ScriptedExchange([]), store=store, fallback_fee_address="1Fallback")

    st = svc.calculate_fee_state(3)
    assert st.next_fee_address == "1Fallback"
    assert store.load().next_fee_send_count == st.next_fee_send_count


class _LockedStore(InMemoryFeeStateStore):
    def save(self, st: StoredFeeState) -> None:
        raise sqlite3.OperationalError("database is locked")


def test_refresh_returns_none_when_state_cannot_be_saved() -> None:
    ex = _ScriptedExchange([Allocation(("B",), 200)])
    svc, _ = _svc(ex, store=_LockedStore())

    assert svc.refresh() is None
    assert len(ex.cited) == 1


def _payer_env(monkeypatch, pub_hex: str) -> None:
    monkeypatch.setenv("BRIT_MATCHER_URL", "https://matcher.example/brit/")
    monkeypatch.setenv("BRIT_MATCHER_PUBLIC_KEY", pub_hex)
    monkeypatch.delenv("BRIT_MATCHER_PUBLIC_KEY_FILE", raising=False)
    monkeypatch.setenv("BRIT_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("BRIT_HTTP_TIMEOUT_S", "3")
    monkeypatch.setenv("BRIT_FEE_PER_SEND_SAT", "5000")
    monkeypatch.setenv("BRIT_NEXT_SEND_LOWER", "2")
    monkeypatch.setenv("BRIT_NEXT_SEND_UPPER", "2")
    monkeypatch.setenv("BRIT_FALLBACK_FEE_ADDRESS", "1Fallback")


def test_service_from_config_talks_to_matcher(monkeypatch, tmp_path) -> None:
    pub_hex, sk = deterministic_x25519_keypair(label="matcher-from-config")
    pool = InMemoryAddressPool(cohort_size=1, rotation_ms=0, clock=lambda: 1_000)
    pool.add("A", 100)
    pool.add("B", 200)
    pool.set_cohort(["B"])
    responder = MatcherResponder(private_key=sk, pool=pool, clock=lambda: 1_000)

    state_path = str(tmp_path / "payer.db")
    _payer_env(monkeypatch, pub_hex)
    monkeypatch.setenv("BRIT_STATE_PATH", state_path)

    svc = FeeService.from_config(
        load_payer_config(),
        payer_identifier=derive_payer_identifier(deterministic_seed(label="from-config")),
        transport=CallableTransport(responder.handle_request),
    )
    try:
        assert isinstance(svc.store, SqliteFeeStateStore)
        assert svc.max_attempts == 4
        assert svc.fee_per_send_sat == 5000
        assert svc.fallback_fee_address == "1Fallback"

        assert svc.refresh() == Allocation(("B",), 200)
        assert svc.calculate_fee_state(2).is_due is True
    finally:
        svc.close()

    again = SqliteFeeStateStore(db=SqliteDB(path=state_path)).load()
    assert again.replay_date == 200
    assert again.addresses == ("B",)
    assert again.next_fee_send_count == 2


def test_service_from_config_defaults_to_http_and_memory(monkeypatch) -> None:
    pub_hex, _sk = deterministic_x25519_keypair(label="matcher-from-config")
    _payer_env(monkeypatch, pub_hex)
    monkeypatch.delenv("BRIT_STATE_PATH", raising=False)

    svc = FeeService.from_config(load_payer_config(), payer_identifier=b"\x01" * 20)

    assert isinstance(svc.store, InMemoryFeeStateStore)
    transport = svc.exchange.transport
    assert isinstance(transport, HttpTransport)
    assert transport.url == "https://matcher.example/brit"
    assert transport.timeout_s == 3.0
