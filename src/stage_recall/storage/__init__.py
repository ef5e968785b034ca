"""Storage backends for stage_recall.

The SQLite store is a local reference implementation of every store
protocol in :mod:`stage_recall.interfaces`, including vector search.
"""

from __future__ import annotations

from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
