#!/usr/bin/env python3

"""Production-ish smoke test for the BRIT Matcher.

It verifies:
  - the Matcher host boots on a fresh SQLite pool seeded from a YAML pool file
  - /healthz answers
  - a FeeService refresh completes a full encrypted exchange and persists
    the replay date, and a second refresh cites it

Usage:
  python3 scripts/prod_smoke.py

Optional env overrides:
  BRIT_COHORT_SIZE=2
"""

from __future__ import annotations

import os
import tempfile
import time

from fastapi.testclient import TestClient

from brit.api.app import create_app
from brit.config import MatcherConfig, _env_int
from brit.crypto.keys import derive_payer_identifier, generate_keypair
from brit.errors import TransportFailure
from brit.payer.exchange import PayerRequestBuilder
from brit.services.fee_service import FeeService
from brit.services.fee_state import SqliteFeeStateStore
from brit.storage.sqlite_db import SqliteDB
from brit.transport import CallableTransport


def main() -> int:
    with tempfile.TemporaryDirectory(prefix="brit-smoke-") as td:
        now = int(time.time() * 1000)
        pool_file = os.path.join(td, "pool.yaml")
        with open(pool_file, "w", encoding="utf-8") as f:
            f.write("addresses:\n")
            for i in range(4):
                f.write(f"  - {{address: smoke-addr-{i}, activated_at_ms: {now - 10_000 + i}}}\n")

        sk, pk = generate_keypair()
        cfg = MatcherConfig(
            private_key=sk,
            db_path=os.path.join(td, "matcher.db"),
            pool_file=pool_file,
            cohort_size=max(1, _env_int("BRIT_COHORT_SIZE", 2)),
        )
        client = TestClient(create_app(cfg))

        r = client.get("/healthz")
        if r.status_code != 200:
            raise RuntimeError(f"/healthz failed: {r.status_code} {r.text}")

        def _post(body: bytes) -> bytes:
            resp = client.post(cfg.endpoint_path, content=body)
            if resp.status_code != 200:
                raise TransportFailure(f"matcher returned HTTP {resp.status_code}", status=resp.status_code)
            return resp.content

        svc = FeeService(
            exchange=PayerRequestBuilder(
                payer_identifier=derive_payer_identifier(os.urandom(64)),
                matcher_public_key=pk,
                transport=CallableTransport(_post),
            ),
            store=SqliteFeeStateStore(db=SqliteDB(path=os.path.join(td, "payer.db"))),
        )

        first = svc.refresh()
        if first is None or first.is_empty:
            raise RuntimeError("first exchange returned nothing")
        second = svc.refresh()
        if second is None or second.replay_date != first.replay_date:
            raise RuntimeError("replay date did not carry across refreshes")

        print(f"OK: smoke passed (addresses={list(first.addresses)}, replay_date={first.replay_date})")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
