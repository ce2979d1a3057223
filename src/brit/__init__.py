# src/brit/__init__.py
"""
BRIT — rotating payee address exchange between a Payer (wallet) and a Matcher.

Package layout:
  - wire: message dataclasses + newline-framed text codec
  - crypto: hybrid envelope (X25519 + AES-GCM) and key helpers
  - matcher: address pool, allocation policy, request responder
  - payer: request builder / exchange client
  - transport / transport_http: opaque-bytes POST
  - services: FeeService (best-effort fee address refresh + fee schedule)
  - api: FastAPI host for the Matcher responder
"""

from __future__ import annotations

__all__ = [
    "wire",
    "crypto",
    "matcher",
    "payer",
    "transport",
    "transport_http",
    "services",
    "api",
]
