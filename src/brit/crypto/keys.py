# src/brit/crypto/keys.py
from __future__ import annotations

import base64
import hashlib
from pathlib import Path
from typing import Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from brit.wire.messages import PAYER_ID_BYTES

KEY_BYTES = 32

PublicKeyLike = Union[X25519PublicKey, bytes, str]
PrivateKeyLike = Union[X25519PrivateKey, bytes, str]

# Fixed salt so the same seed always maps to the same identifier. Changing it
# re-identifies every wallet to the Matcher.
_PAYER_ID_SALT = b"brit-payer-identifier-v1"


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except Exception as e:
        raise ValueError("not hex or base64") from e


def generate_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    sk = X25519PrivateKey.generate()
    return sk, sk.public_key()


def public_key_bytes(pk: X25519PublicKey) -> bytes:
    return pk.public_bytes(Encoding.Raw, PublicFormat.Raw)


def private_key_bytes(sk: X25519PrivateKey) -> bytes:
    return sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())


def load_public_key(key: PublicKeyLike) -> X25519PublicKey:
    """Accept a key object, 32 raw bytes, or a hex/base64 string."""
    if isinstance(key, X25519PublicKey):
        return key
    raw = _decode_bytes(key) if isinstance(key, str) else bytes(key)
    if len(raw) != KEY_BYTES:
        raise ValueError(f"x25519 public key must be {KEY_BYTES} bytes")
    return X25519PublicKey.from_public_bytes(raw)


def load_private_key(key: PrivateKeyLike) -> X25519PrivateKey:
    if isinstance(key, X25519PrivateKey):
        return key
    raw = _decode_bytes(key) if isinstance(key, str) else bytes(key)
    if len(raw) != KEY_BYTES:
        raise ValueError(f"x25519 private key must be {KEY_BYTES} bytes")
    return X25519PrivateKey.from_private_bytes(raw)


def load_public_key_file(path: str) -> X25519PublicKey:
    """Load a Matcher public key from a PEM file, or a file holding hex/base64 text."""
    data = Path(path).expanduser().read_bytes()
    if b"-----BEGIN" in data:
        key = serialization.load_pem_public_key(data)
        if not isinstance(key, X25519PublicKey):
            raise ValueError("PEM key is not an X25519 public key")
        return key
    return load_public_key(data.decode("ascii"))


def load_private_key_file(path: str) -> X25519PrivateKey:
    data = Path(path).expanduser().read_bytes()
    if b"-----BEGIN" in data:
        key = serialization.load_pem_private_key(data, password=None)
        if not isinstance(key, X25519PrivateKey):
            raise ValueError("PEM key is not an X25519 private key")
        return key
    return load_private_key(data.decode("ascii"))


def derive_payer_identifier(seed: bytes) -> bytes:
    """Derive the fixed-width Payer identifier from the wallet seed.

    One-way (scrypt) so the identifier reveals nothing about the seed, and
    deterministic so a restored wallet presents the same identity.
    """
    if not seed:
        raise ValueError("seed must be non-empty")
    return hashlib.scrypt(bytes(seed), salt=_PAYER_ID_SALT, n=2**14, r=8, p=1, dklen=PAYER_ID_BYTES)
