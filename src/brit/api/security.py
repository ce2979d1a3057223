# src/brit/api/security.py
from __future__ import annotations

import os
from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from brit.api.errors import ApiError
from brit.config import _truthy


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject oversized exchange bodies with 413 before they reach the responder.

    An exchange request is a few hundred bytes, and decrypt/decode cost grows
    with input size, so the cap bounds per-request CPU. Only `limited_paths`
    are checked; everything else passes through.

    The declared Content-Length is checked first, then the buffered body
    (chunked uploads carry no length).

    BRIT_SIZE_LIMIT_DISABLE=1 turns the check off when the edge proxy enforces it.
    """

    def __init__(self, app, *, max_bytes: int, limited_paths: Iterable[str]) -> None:
        super().__init__(app)
        self._enabled = not _truthy(os.environ.get("BRIT_SIZE_LIMIT_DISABLE"))
        self._max_bytes = int(max_bytes)
        self._paths = frozenset(limited_paths)

    def _reject(self, size: int):
        return ApiError.too_large(
            "request_too_large",
            "Request body too large",
            {"max_bytes": self._max_bytes, "size": size},
        ).to_response()

    async def dispatch(self, request: Request, call_next):
        if not self._enabled or request.url.path not in self._paths:
            return await call_next(request)

        declared = _declared_length(request)
        if declared is not None and declared > self._max_bytes:
            return self._reject(declared)

        body = await request.body()
        if len(body) > self._max_bytes:
            return self._reject(len(body))

        return await call_next(request)
