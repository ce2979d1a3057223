# src/brit/crypto/envelope.py
"""
BRIT — Hybrid encryption envelope

Asymmetric encryption of an unbounded address list is slow, so only a fresh
32-byte session key is wrapped for the recipient; the payload itself is sealed
with AES-256-GCM under that session key.

Blob layout (all integers big-endian):

  magic           4   b"BRIT"
  format          1   0x01
  ephemeral_pub  32   sender's one-shot X25519 public key
  wrap_nonce     12
  payload_nonce  12
  wrapped_len     2   u16
  cipher_len      4   u32
  wrapped_key     wrapped_len   AES-GCM(kek, session_key)
  ciphertext      cipher_len    AES-GCM(session_key, plaintext)

kek = HKDF-SHA256(X25519(ephemeral, recipient), info=label|ephemeral_pub|recipient_pub)

The fixed header is the associated data of both AEAD operations, so every bit
of the blob is authenticated (including the X25519 high bit that the curve
itself ignores).
"""

from __future__ import annotations

import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from brit.crypto.keys import (
    KEY_BYTES,
    PrivateKeyLike,
    PublicKeyLike,
    load_private_key,
    load_public_key,
    public_key_bytes,
)
from brit.errors import DecryptionFailure, MalformedMessage

MAGIC = b"BRIT"
FORMAT_VERSION = 1

NONCE_BYTES = 12
TAG_BYTES = 16
SESSION_KEY_BYTES = 32
WRAPPED_KEY_BYTES = SESSION_KEY_BYTES + TAG_BYTES

_HEADER = struct.Struct(">4sB32s12s12sHI")
HEADER_BYTES = _HEADER.size

_KDF_LABEL = b"brit-envelope-v1"


def _kek(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SESSION_KEY_BYTES,
        salt=None,
        info=_KDF_LABEL + ephemeral_pub + recipient_pub,
    )
    return hkdf.derive(shared)


def encrypt(plaintext: bytes, recipient_public_key: PublicKeyLike) -> bytes:
    """Seal plaintext so only the holder of the matching private key can read it."""
    recipient = load_public_key(recipient_public_key)
    recipient_pub = public_key_bytes(recipient)

    ephemeral = X25519PrivateKey.generate()
    ephemeral_pub = public_key_bytes(ephemeral.public_key())
    try:
        shared = ephemeral.exchange(recipient)
    except ValueError as e:
        # Low-order points yield an all-zero shared secret.
        raise MalformedMessage("recipient public key is unusable for key agreement") from e
    kek = _kek(shared, ephemeral_pub, recipient_pub)

    session_key = AESGCM.generate_key(bit_length=SESSION_KEY_BYTES * 8)
    wrap_nonce = os.urandom(NONCE_BYTES)
    payload_nonce = os.urandom(NONCE_BYTES)

    plaintext = bytes(plaintext)
    header = _HEADER.pack(
        MAGIC,
        FORMAT_VERSION,
        ephemeral_pub,
        wrap_nonce,
        payload_nonce,
        WRAPPED_KEY_BYTES,
        len(plaintext) + TAG_BYTES,
    )

    wrapped = AESGCM(kek).encrypt(wrap_nonce, session_key, header)
    ciphertext = AESGCM(session_key).encrypt(payload_nonce, plaintext, header)
    return header + wrapped + ciphertext


def decrypt(cipher_bytes: bytes, recipient_private_key: PrivateKeyLike) -> bytes:
    """Open a blob produced by encrypt().

    Raises DecryptionFailure on any framing, key or integrity problem. Nothing
    is returned unless both authentication tags verify.
    """
    recipient = load_private_key(recipient_private_key)
    blob = bytes(cipher_bytes)

    if len(blob) < HEADER_BYTES:
        raise DecryptionFailure("envelope too short")

    header = blob[:HEADER_BYTES]
    magic, fmt, ephemeral_pub, wrap_nonce, payload_nonce, wrapped_len, cipher_len = _HEADER.unpack(header)

    if magic != MAGIC:
        raise DecryptionFailure("not a BRIT envelope")
    if fmt != FORMAT_VERSION:
        raise DecryptionFailure(f"unsupported envelope format {fmt}")
    if wrapped_len != WRAPPED_KEY_BYTES or cipher_len < TAG_BYTES:
        raise DecryptionFailure("invalid envelope lengths")
    if len(blob) != HEADER_BYTES + wrapped_len + cipher_len:
        raise DecryptionFailure("envelope length mismatch")

    wrapped = blob[HEADER_BYTES : HEADER_BYTES + wrapped_len]
    ciphertext = blob[HEADER_BYTES + wrapped_len :]

    try:
        shared = recipient.exchange(X25519PublicKey.from_public_bytes(ephemeral_pub))
        kek = _kek(shared, ephemeral_pub, public_key_bytes(recipient.public_key()))
        session_key = AESGCM(kek).decrypt(wrap_nonce, wrapped, header)
        if len(session_key) != SESSION_KEY_BYTES:
            raise DecryptionFailure("invalid session key")
        return AESGCM(session_key).decrypt(payload_nonce, ciphertext, header)
    except InvalidTag as e:
        raise DecryptionFailure("envelope authentication failed") from e
    except ValueError as e:
        # Degenerate ephemeral key (all-zero shared secret).
        raise DecryptionFailure("envelope key agreement failed") from e


__all__ = [
    "encrypt",
    "decrypt",
    "HEADER_BYTES",
    "KEY_BYTES",
    "MAGIC",
]
