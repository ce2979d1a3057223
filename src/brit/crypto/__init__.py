# src/brit/crypto/__init__.py
"""
Crypto helpers:
  - envelope: hybrid encrypt/decrypt (X25519 key wrap + AES-256-GCM payload)
  - keys: X25519 key loading/generation + Payer identifier derivation
"""

from __future__ import annotations

__all__ = ["envelope", "keys"]
