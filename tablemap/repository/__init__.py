"""Repository layer: statement execution and schema migration (SQLite).

Keep functions thin and focused, so the session layer avoids driver calls.
"""
from __future__ import annotations
