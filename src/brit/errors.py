from __future__ import annotations

from typing import Optional


class ExchangeError(RuntimeError):
    """Base class for every failure of a single Payer/Matcher exchange.

    `code` is a stable machine-readable string; the message is for humans and
    must never carry plaintext payload or key material.
    """

    code = "exchange_error"

    def __init__(self, msg: str, *, code: Optional[str] = None) -> None:
        super().__init__(msg)
        if code is not None:
            self.code = code


class VersionMismatch(ExchangeError):
    """Decoded version is not understood. Permanent: do not retry."""

    code = "version_mismatch"

    def __init__(self, version: object, supported: int) -> None:
        super().__init__(f"message version {version!r} not supported (this code understands {supported})")
        self.version = version
        self.supported = supported


class MalformedMessage(ExchangeError):
    code = "malformed_message"


class DecryptionFailure(ExchangeError):
    code = "decryption_failure"


class TransportFailure(ExchangeError):
    """Network error, timeout or non-success HTTP status.

    Retryable unless the Matcher answered with a client error (4xx): a 400 or
    409 means the request itself is unacceptable and will be again.
    """

    code = "transport_failure"

    def __init__(self, msg: str, *, status: Optional[int] = None) -> None:
        super().__init__(msg)
        self.status = status


class WireEncodeError(ExchangeError):
    code = "encode_failed"


# 4xx statuses that still describe a transient condition.
_TRANSIENT_CLIENT_STATUSES = frozenset({408, 429})


def is_retryable(err: BaseException) -> bool:
    if not isinstance(err, TransportFailure):
        return False
    status = err.status
    if status is None or not 400 <= status < 500:
        return True
    return status in _TRANSIENT_CLIENT_STATUSES
