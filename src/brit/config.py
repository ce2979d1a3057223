from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, urlunparse

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from brit.crypto.keys import load_private_key, load_private_key_file, load_public_key, load_public_key_file

DAY_MS = 24 * 60 * 60 * 1000


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


def allow_insecure_localhost() -> bool:
    """Dev convenience: allow http://localhost and http://127.0.0.1 Matcher URLs."""
    env = os.getenv("BRIT_ALLOW_INSECURE_LOCALHOST")
    if env is not None:
        return _truthy(env)
    return (os.getenv("BRIT_MODE") or "prod").strip().lower() != "prod"


def normalize_matcher_url(url: str, *, allow_insecure_localhost_urls: bool) -> str:
    """
    Normalize and validate the Matcher endpoint URL.

    Rules:
      - Must be https://... OR (if allowed) http://localhost/... or http://127.0.0.1/...
      - Rejects query/fragment (nothing about the payer may ride in the URL)
      - Strips a trailing slash from the path
    """
    if not isinstance(url, str) or not url.strip():
        raise ValueError("matcher_url must be a non-empty string")

    parsed = urlparse(url.strip())

    if parsed.query or parsed.fragment:
        raise ValueError("matcher_url must not include query or fragment")

    scheme = (parsed.scheme or "").lower()
    host = (parsed.hostname or "").lower()

    if not host:
        raise ValueError("matcher_url must include a hostname")

    if scheme == "https":
        pass
    elif scheme == "http" and allow_insecure_localhost_urls and host in {"localhost", "127.0.0.1"}:
        pass
    else:
        raise ValueError("matcher_url must be https (or http localhost in dev)")

    path = (parsed.path or "").rstrip("/")
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


@dataclass(frozen=True)
class PayerConfig:
    matcher_url: str
    matcher_public_key: X25519PublicKey

    timeout_s: float = 10.0

    # Retry / backoff (FeeService only; the exchange itself never retries)
    max_attempts: int = 3
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 10_000

    # Where FeeService persists replay date + fee bookkeeping. None = in memory.
    state_path: Optional[str] = None

    # Fee schedule
    fee_per_send_sat: int = 10_000
    next_send_lower: int = 20
    next_send_upper: int = 30
    fallback_fee_address: Optional[str] = None


def _load_matcher_public_key() -> X25519PublicKey:
    path = _env_str("BRIT_MATCHER_PUBLIC_KEY_FILE")
    if path:
        return load_public_key_file(path)
    raw = _env_str("BRIT_MATCHER_PUBLIC_KEY")
    if not raw:
        raise RuntimeError("BRIT_MATCHER_PUBLIC_KEY or BRIT_MATCHER_PUBLIC_KEY_FILE must be set")
    return load_public_key(raw)


def load_payer_config() -> PayerConfig:
    url = _env_str("BRIT_MATCHER_URL", "https://localhost/brit") or ""
    matcher_url = normalize_matcher_url(url, allow_insecure_localhost_urls=allow_insecure_localhost())

    lower = max(1, _env_int("BRIT_NEXT_SEND_LOWER", 20))
    upper = max(lower, _env_int("BRIT_NEXT_SEND_UPPER", 30))
    base = max(50, _env_int("BRIT_BACKOFF_BASE_MS", 500))

    return PayerConfig(
        matcher_url=matcher_url,
        matcher_public_key=_load_matcher_public_key(),
        timeout_s=max(0.5, _env_float("BRIT_HTTP_TIMEOUT_S", 10.0)),
        max_attempts=max(1, _env_int("BRIT_MAX_ATTEMPTS", 3)),
        backoff_base_ms=base,
        backoff_cap_ms=max(base, _env_int("BRIT_BACKOFF_CAP_MS", 10_000)),
        state_path=_env_str("BRIT_STATE_PATH"),
        fee_per_send_sat=max(0, _env_int("BRIT_FEE_PER_SEND_SAT", 10_000)),
        next_send_lower=lower,
        next_send_upper=upper,
        fallback_fee_address=_env_str("BRIT_FALLBACK_FEE_ADDRESS"),
    )


@dataclass(frozen=True)
class MatcherConfig:
    private_key: X25519PrivateKey
    db_path: Optional[str] = None
    pool_file: Optional[str] = None

    # Deployment policy, not protocol constants.
    cohort_size: int = 4
    rotation_ms: int = DAY_MS

    endpoint_path: str = "/brit"
    max_request_bytes: int = 64 * 1024

    host: str = "127.0.0.1"
    port: int = 9090


def _load_matcher_private_key() -> X25519PrivateKey:
    path = _env_str("BRIT_MATCHER_PRIVATE_KEY_FILE")
    if path:
        return load_private_key_file(path)
    raw = _env_str("BRIT_MATCHER_PRIVATE_KEY")
    if not raw:
        raise RuntimeError("BRIT_MATCHER_PRIVATE_KEY or BRIT_MATCHER_PRIVATE_KEY_FILE must be set")
    return load_private_key(raw)


def load_matcher_config() -> MatcherConfig:
    endpoint = _env_str("BRIT_ENDPOINT_PATH", "/brit") or "/brit"
    if not endpoint.startswith("/"):
        endpoint = "/" + endpoint

    return MatcherConfig(
        private_key=_load_matcher_private_key(),
        db_path=_env_str("BRIT_MATCHER_DB_PATH"),
        pool_file=_env_str("BRIT_POOL_FILE"),
        cohort_size=max(1, _env_int("BRIT_COHORT_SIZE", 4)),
        rotation_ms=max(0, _env_int("BRIT_COHORT_ROTATION_MS", DAY_MS)),
        endpoint_path=endpoint.rstrip("/") or "/brit",
        max_request_bytes=max(1024, _env_int("BRIT_MAX_REQUEST_BYTES", 64 * 1024)),
        host=_env_str("BRIT_API_HOST", "127.0.0.1") or "127.0.0.1",
        port=_env_int("BRIT_API_PORT", 9090),
    )
