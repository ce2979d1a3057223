# src/brit/matcher/allocation.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from brit.matcher.pool import AddressPool, PoolAddress
from brit.wire.messages import Address, TimestampMs


@dataclass(frozen=True, slots=True)
class Allocation:
    """Addresses a payer should use this cycle, plus the replay date to cite next time.

    Empty addresses + replay_date None means "nothing this cycle" (not an error).
    """

    addresses: Tuple[Address, ...] = field(default_factory=tuple)
    replay_date: Optional[TimestampMs] = None

    @property
    def is_empty(self) -> bool:
        return not self.addresses


EMPTY = Allocation()


def effective_replay_date(replay_date: Optional[TimestampMs], now_ms: int) -> Optional[TimestampMs]:
    """A replay date in the future is ignored.

    Otherwise a skewed or forged date would suppress every future activation.
    """
    if replay_date is None or replay_date > now_ms:
        return None
    return replay_date


def _merge(cohort: List[PoolAddress], fresh: List[PoolAddress]) -> List[PoolAddress]:
    seen: Dict[str, PoolAddress] = {}
    for a in list(cohort) + list(fresh):
        seen.setdefault(a.address, a)
    return sorted(seen.values(), key=lambda a: (a.activated_at_ms, a.address))


def allocate(pool: AddressPool, replay_date: Optional[TimestampMs], now_ms: int) -> Allocation:
    """Decide which addresses a request receives.

    1. first contact (no usable replay date): the current cohort; replay date
       is the newest activation among it
    2. replay date D: everything activated in (D, now] plus the current
       cohort; replay date is max(D, newest activation considered)
    3. nothing to offer: EMPTY
    """
    since = effective_replay_date(replay_date, now_ms)

    cohort = [a for a in pool.current_cohort() if a.activated_at_ms <= now_ms]

    if since is None:
        chosen = _merge(cohort, [])
        if not chosen:
            return EMPTY
        return Allocation(
            addresses=tuple(a.address for a in chosen),
            replay_date=max(a.activated_at_ms for a in chosen),
        )

    fresh = [a for a in pool.activated_since(since) if a.activated_at_ms <= now_ms]
    chosen = _merge(cohort, fresh)
    if not chosen:
        return EMPTY
    newest = max(a.activated_at_ms for a in chosen)
    return Allocation(addresses=tuple(a.address for a in chosen), replay_date=max(since, newest))
