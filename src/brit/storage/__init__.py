# src/brit/storage/__init__.py
"""
SQLite persistence:
- Matcher side: activated address pool + current cohort.
- Payer side: FeeService bookkeeping (last replay date, fee paid, next fee send).
"""
