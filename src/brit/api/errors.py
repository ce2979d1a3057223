from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from brit.errors import DecryptionFailure, ExchangeError, MalformedMessage, VersionMismatch


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def too_large(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(413, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}},
        )


def api_error_from_exchange(e: ExchangeError) -> ApiError:
    """Map a failed exchange to a status code.

    Messages stay generic: a rejected request learns nothing about why the
    envelope did not open.
    """
    if isinstance(e, VersionMismatch):
        return ApiError.conflict(e.code, "unsupported message version", {"supported": e.supported})
    if isinstance(e, DecryptionFailure):
        return ApiError.bad_request(e.code, "request could not be decrypted")
    if isinstance(e, MalformedMessage):
        return ApiError.bad_request(e.code, "malformed request")
    return ApiError.internal(e.code, "exchange failed")
