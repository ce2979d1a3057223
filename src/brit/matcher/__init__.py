# src/brit/matcher/__init__.py
"""
Matcher side:
  - pool: activated addresses + rotating cohort (in-memory / SQLite)
  - allocation: pure replay-date policy over a pool snapshot
  - responder: decrypt -> decode -> allocate -> encode -> encrypt
"""

from __future__ import annotations

__all__ = ["pool", "allocation", "responder"]
