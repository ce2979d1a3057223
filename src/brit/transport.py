"""
BRIT — Transport (abstract I/O layer)

The exchange only needs one operation: POST opaque bytes, get opaque bytes
back. Bodies are always envelope.encrypt() output; the transport never sees
plaintext and must not add wallet-identifying metadata.

Implementations raise brit.errors.TransportFailure for network errors,
timeouts and non-success statuses.
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

CONTENT_TYPE = "application/octet-stream"


@runtime_checkable
class Transport(Protocol):
    def post(self, body: bytes) -> bytes: ...


class CallableTransport:
    """Adapt a plain `bytes -> bytes` function (e.g. an in-process responder)."""

    def __init__(self, fn: Callable[[bytes], bytes]) -> None:
        self._fn = fn

    def post(self, body: bytes) -> bytes:
        return self._fn(body)
