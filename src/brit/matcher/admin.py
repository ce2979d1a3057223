# src/brit/matcher/admin.py
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List

from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

from brit.config import _env_int
from brit.crypto.keys import generate_keypair, public_key_bytes
from brit.matcher.pool import SqliteAddressPool, load_pool_file, seed_pool
from brit.storage.sqlite_db import SqliteDB


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="brit-matcher-admin", description="BRIT Matcher operator tools")
    p.add_argument(
        "--db",
        dest="db_path",
        default=os.environ.get("BRIT_MATCHER_DB_PATH", "./data/matcher.db"),
        help="Matcher SQLite path (default: BRIT_MATCHER_DB_PATH or ./data/matcher.db)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    kg = sub.add_parser("keygen", help="Create a Matcher X25519 keypair")
    kg.add_argument("--out", required=True, help="Where to write the private key (PEM, mode 0600)")

    add = sub.add_parser("add", help="Activate an address")
    add.add_argument("address")
    add.add_argument("--at", dest="activated_at_ms", type=int, default=None, help="Activation epoch ms (default: now)")

    imp = sub.add_parser("import", help="Activate every address of a YAML pool file")
    imp.add_argument("pool_file")

    coh = sub.add_parser("set-cohort", help="Replace the current cohort")
    coh.add_argument("addresses", nargs="+")

    sub.add_parser("show", help="Print the current cohort")
    return p.parse_args(argv)


def _keygen(out: str) -> dict:
    sk, pk = generate_keypair()
    pem = sk.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    path = Path(out).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pem)
    return {"ok": True, "private_key_file": str(path), "public_key_hex": public_key_bytes(pk).hex()}


def main(argv: List[str]) -> int:
    args = _parse_args(argv)

    if args.cmd == "keygen":
        try:
            res = _keygen(args.out)
        except FileExistsError:
            print(f"ERROR: {args.out} already exists; refusing to overwrite a key", file=sys.stderr)
            return 1
        print(json.dumps(res, indent=2))
        return 0

    # rotation_ms=0: the admin tool never advances an existing cohort.
    pool = SqliteAddressPool(
        db=SqliteDB(path=str(args.db_path)),
        cohort_size=max(1, _env_int("BRIT_COHORT_SIZE", 4)),
        rotation_ms=0,
    )

    try:
        if args.cmd == "add":
            rec = pool.add(args.address, args.activated_at_ms)
            res = {"ok": True, "address": rec.address, "activated_at_ms": rec.activated_at_ms}
        elif args.cmd == "import":
            res = {"ok": True, "imported": seed_pool(pool, load_pool_file(args.pool_file))}
        elif args.cmd == "set-cohort":
            pool.set_cohort(args.addresses)
            res = {"ok": True, "cohort": list(args.addresses)}
        else:
            cohort = pool.current_cohort()
            res = {
                "ok": True,
                "epoch": pool.cohort_epoch,
                "cohort": [{"address": a.address, "activated_at_ms": a.activated_at_ms} for a in cohort],
            }
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}, indent=2))
        return 1

    print(json.dumps(res, indent=2))
    return 0


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(cli())
