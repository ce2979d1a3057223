# src/brit/wire/__init__.py
"""
Wire layer: frozen message dataclasses + the newline-framed text codec.

  1st row: decimal version
  2nd row: epoch millis or "not-present"
  rest:    one payload item per row
"""

from __future__ import annotations

__all__ = ["messages", "codec"]
