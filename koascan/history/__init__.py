from __future__ import annotations

from .storage import ClassificationRecord, SQLiteHistoryStore

__all__ = ["ClassificationRecord", "SQLiteHistoryStore"]
