from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from ..errors import RecordNotFound
from .storage import ClassificationRecord, SQLiteHistoryStore

logger = logging.getLogger(__name__)


@dataclass
class HistoryService:
    """Read and prune classification history on behalf of the presentation layer."""

    store: SQLiteHistoryStore

    def load_history(self) -> List[ClassificationRecord]:
        records = self.store.list_all()
        logger.debug("Loaded %d history entries", len(records))
        return records

    def get_entry(self, record_id: str) -> ClassificationRecord | None:
        return self.store.get_by_id(record_id)

    def delete_entry(self, record_id: str) -> None:
        """Delete ``record_id``; raises :class:`RecordNotFound` when absent."""
        if self.store.get_by_id(record_id) is None:
            raise RecordNotFound(record_id)
        self.store.delete_by_id(record_id)

    def total_count(self) -> int:
        return self.store.count()


__all__ = ["HistoryService"]
