# src/brit/transport_http.py
from __future__ import annotations

import logging
import urllib.error
import urllib.request

from brit.errors import TransportFailure
from brit.log import log_event
from brit.transport import CONTENT_TYPE

log = logging.getLogger("brit.transport")

# Response bodies are small (a handful of addresses); anything bigger is not ours.
MAX_RESPONSE_BYTES = 1024 * 1024


class HttpTransport:
    """Single HTTP(S) POST per exchange, bounded by timeout_s."""

    def __init__(self, url: str, *, timeout_s: float = 10.0, max_response_bytes: int = MAX_RESPONSE_BYTES) -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self.max_response_bytes = int(max_response_bytes)

    def post(self, body: bytes) -> bytes:
        req = urllib.request.Request(url=self.url, method="POST", data=bytes(body))
        req.add_header("Content-Type", CONTENT_TYPE)
        req.add_header("Accept", CONTENT_TYPE)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                data = resp.read(self.max_response_bytes + 1)
        except urllib.error.HTTPError as e:
            log_event(log, "http_post_failed", level=logging.WARNING, status=int(e.code or 0))
            raise TransportFailure(f"matcher returned HTTP {e.code}", status=int(e.code or 0)) from e
        except (urllib.error.URLError, OSError) as e:
            # URLError wraps connection errors; socket timeouts surface as OSError.
            reason = getattr(e, "reason", e)
            log_event(log, "http_post_failed", level=logging.WARNING, error=str(reason))
            raise TransportFailure(f"matcher unreachable: {reason}") from e

        if not 200 <= status < 300:
            raise TransportFailure(f"matcher returned HTTP {status}", status=status)
        if len(data) > self.max_response_bytes:
            raise TransportFailure("matcher response too large", status=status)
        return data
