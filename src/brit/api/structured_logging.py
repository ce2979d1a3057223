# src/brit/api/structured_logging.py
from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from brit.config import _truthy
from brit.log import log_event


def _to_int(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One `http_request` event per Matcher request.

    Fields: request id, method, path, status, body/response sizes, duration.
    Client address and headers are never logged, so Matcher logs cannot be
    used to correlate payers.

    BRIT_LOG_REQUESTS=0 disables it (default on).
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _truthy(os.environ.get("BRIT_LOG_REQUESTS") or "1")
        self._logger = logging.getLogger("brit.http")

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request_id = uuid.uuid4().hex
        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path or ""),
            "body_bytes": _to_int(request.headers.get("content-length")),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            log_event(
                self._logger,
                "http_request",
                level=logging.ERROR,
                status=500,
                error=type(e).__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
                **fields,
            )
            raise

        response.headers.setdefault("x-request-id", request_id)
        log_event(
            self._logger,
            "http_request",
            status=int(response.status_code),
            response_bytes=_to_int(response.headers.get("content-length")),
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
        return response