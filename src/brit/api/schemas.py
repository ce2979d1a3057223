"""Pydantic response schemas for the Matcher host's JSON endpoints.

The exchange endpoint itself speaks opaque bytes; only operator-facing
endpoints use JSON.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = Field(default=True)
    protocol_version: int = Field(..., description="Wire version this Matcher understands")
    cohort_size: int = Field(..., description="Addresses in the current cohort")
    endpoint: str = Field(..., description="Path accepting exchange POSTs")
