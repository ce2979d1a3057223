from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Optional, Protocol

from brit.config import PayerConfig
from brit.errors import ExchangeError, is_retryable
from brit.log import log_event
from brit.matcher.allocation import Allocation
from brit.payer.exchange import PayerRequestBuilder
from brit.services.fee_state import (
    FeeState,
    FeeStateStore,
    InMemoryFeeStateStore,
    SqliteFeeStateStore,
    StoredFeeState,
    calculate_fee_state,
    pick_next_send_count,
    with_fee_paid,
)
from brit.storage.sqlite_db import SqliteDB
from brit.transport import Transport
from brit.transport_http import HttpTransport
from brit.wire.messages import TimestampMs

log = logging.getLogger("brit.fee_service")


class AddressExchange(Protocol):
    def request_addresses(self, prior_replay_date: Optional[TimestampMs] = None) -> Allocation: ...


class FeeService:
    """Wallet-facing façade.

    - request_addresses(): one exchange with bounded retry on transport errors
    - refresh() / refresh_async(): best-effort cycle that persists the replay
      date; never raises into the wallet
    - calculate_fee_state() / record_fee_paid(): fee schedule bookkeeping

    Payment itself (building + signing the fee output) belongs to the wallet.
    """

    def __init__(
        self,
        *,
        exchange: AddressExchange,
        store: Optional[FeeStateStore] = None,
        max_attempts: int = 3,
        backoff_base_ms: int = 500,
        backoff_cap_ms: int = 10_000,
        fee_per_send_sat: int = 10_000,
        next_send_lower: int = 20,
        next_send_upper: int = 30,
        fallback_fee_address: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if next_send_upper < next_send_lower:
            raise ValueError("next_send_upper must be >= next_send_lower")
        self.exchange = exchange
        self.store = store or InMemoryFeeStateStore()
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_cap_ms = max(self.backoff_base_ms, int(backoff_cap_ms))
        self.fee_per_send_sat = int(fee_per_send_sat)
        self.next_send_lower = int(next_send_lower)
        self.next_send_upper = int(next_send_upper)
        self.fallback_fee_address = fallback_fee_address
        self._sleep = sleep
        self._rng = rng or random.SystemRandom()
        self._state_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(
        cls,
        cfg: PayerConfig,
        *,
        payer_identifier: bytes,
        first_transaction_date: Optional[TimestampMs] = None,
        transport: Optional[Transport] = None,
    ) -> "FeeService":
        exchange = PayerRequestBuilder(
            payer_identifier=payer_identifier,
            matcher_public_key=cfg.matcher_public_key,
            transport=transport or HttpTransport(cfg.matcher_url, timeout_s=cfg.timeout_s),
            first_transaction_date=first_transaction_date,
        )
        store: FeeStateStore
        if cfg.state_path:
            store = SqliteFeeStateStore(db=SqliteDB(path=cfg.state_path))
        else:
            store = InMemoryFeeStateStore()
        return cls(
            exchange=exchange,
            store=store,
            max_attempts=cfg.max_attempts,
            backoff_base_ms=cfg.backoff_base_ms,
            backoff_cap_ms=cfg.backoff_cap_ms,
            fee_per_send_sat=cfg.fee_per_send_sat,
            next_send_lower=cfg.next_send_lower,
            next_send_upper=cfg.next_send_upper,
            fallback_fee_address=cfg.fallback_fee_address,
        )

    def _load_state(self) -> StoredFeeState:
        """Stored state, or a fresh one when the stored row cannot be decoded.

        A corrupt row is replaced on the next save. Storage errors propagate.
        """
        try:
            return self.store.load()
        except ValueError as e:
            log_event(log, "fee_state_unavailable", level=logging.WARNING, op="decode", error=type(e).__name__)
            return StoredFeeState()

    # ----------------------------
    # Exchange
    # ----------------------------

    def _compute_backoff_ms(self, attempt: int) -> int:
        # base * 2^(attempt-1), capped; attempt starts at 1 for the first failure.
        a = max(1, int(attempt))
        return int(min(self.backoff_cap_ms, self.backoff_base_ms * (2 ** (a - 1))))

    def request_addresses(self, prior_replay_date: Optional[TimestampMs] = None) -> Allocation:
        """Run one exchange, retrying only transient transport failures.

        Permanent errors (version, malformed, decryption) are raised at once.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.exchange.request_addresses(prior_replay_date)
            except ExchangeError as e:
                if not is_retryable(e) or attempt >= self.max_attempts:
                    raise
                delay_ms = self._compute_backoff_ms(attempt)
                log_event(
                    log,
                    "fee_exchange_retry",
                    level=logging.WARNING,
                    attempt=attempt,
                    code=e.code,
                    backoff_ms=delay_ms,
                )
                self._sleep(delay_ms / 1000.0)

    def refresh(self) -> Optional[Allocation]:
        """Best-effort cycle: cite the stored replay date, remember the answer.

        Returns None when the exchange or the state store failed; an empty
        Allocation when the Matcher had nothing this cycle (stored state is
        left alone). Never raises.
        """
        try:
            prior = self._load_state().replay_date
        except Exception as e:
            log_event(log, "fee_state_unavailable", level=logging.WARNING, op="load", error=type(e).__name__)
            prior = None

        try:
            alloc = self.request_addresses(prior)
        except ExchangeError as e:
            log_event(log, "fee_exchange_failed", level=logging.WARNING, code=e.code, error=str(e))
            return None
        except Exception:
            log.exception("fee exchange failed unexpectedly")
            return None

        if alloc.is_empty:
            log_event(log, "fee_exchange_empty")
            return alloc

        try:
            with self._state_lock:
                st = self._load_state()
                self.store.save(replace(st, replay_date=alloc.replay_date, addresses=alloc.addresses))
        except Exception as e:
            log_event(log, "fee_state_unavailable", level=logging.WARNING, op="save", error=type(e).__name__)
            return None
        log_event(log, "fee_exchange_stored", addresses=len(alloc.addresses))
        return alloc

    def refresh_async(self) -> "Future[Optional[Allocation]]":
        """Run refresh() on the background worker. The caller never blocks."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="brit-fee")
        return self._executor.submit(self.refresh)

    def close(self) -> None:
        if self._executor is not None:
            # Pending exchanges are dropped; their results are never surfaced.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # ----------------------------
    # Fee schedule
    # ----------------------------

    def calculate_fee_state(self, send_count: int) -> FeeState:
        with self._state_lock:
            st = self._load_state()
            if st.next_fee_send_count is None:
                st = replace(
                    st,
                    next_fee_send_count=pick_next_send_count(0, self.next_send_lower, self.next_send_upper, self._rng),
                )
                self.store.save(st)
            assert st.next_fee_send_count is not None
            return calculate_fee_state(
                stored=st,
                send_count=send_count,
                fee_per_send_sat=self.fee_per_send_sat,
                fallback_address=self.fallback_fee_address,
                next_fee_send_count=st.next_fee_send_count,
                rng=self._rng,
            )

    def record_fee_paid(self, amount_sat: int, *, send_count: int) -> StoredFeeState:
        """Wallet callback once a fee output was broadcast."""
        with self._state_lock:
            st = self._load_state()
            nxt = pick_next_send_count(send_count, self.next_send_lower, self.next_send_upper, self._rng)
            st = with_fee_paid(st, amount_sat, nxt)
            self.store.save(st)
        log_event(log, "fee_paid_recorded", amount_sat=int(amount_sat), next_fee_send_count=nxt)
        return st
