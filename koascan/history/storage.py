from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from ..ai.types import KL_GRADES, RemoteClassification
from ..errors import RecordNotFound, StoreUnavailable, StoreWriteFailed

logger = logging.getLogger(__name__)

TABLE_NAME = "classification_history"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id TEXT PRIMARY KEY,
    source_image_ref TEXT NOT NULL,
    predicted_grade INTEGER NOT NULL,
    predicted_confidence REAL NOT NULL,
    heatmap_image_ref TEXT NOT NULL,
    created_at TEXT NOT NULL,
    grade_confidences TEXT NOT NULL
)
"""

_UPSERT = f"""
INSERT INTO {TABLE_NAME} (
    id, source_image_ref, predicted_grade, predicted_confidence,
    heatmap_image_ref, created_at, grade_confidences
) VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    source_image_ref = excluded.source_image_ref,
    predicted_grade = excluded.predicted_grade,
    predicted_confidence = excluded.predicted_confidence,
    heatmap_image_ref = excluded.heatmap_image_ref,
    created_at = excluded.created_at,
    grade_confidences = excluded.grade_confidences
"""

_COLUMNS = (
    "id, source_image_ref, predicted_grade, predicted_confidence, "
    "heatmap_image_ref, created_at, grade_confidences"
)


@dataclass(frozen=True)
class ClassificationRecord:
    """One completed classification as kept in history."""

    id: str
    source_image_ref: str
    predicted_grade: int
    predicted_confidence: float
    heatmap_image_ref: str
    created_at: datetime
    # Read-only view after construction; excluded from the hash.
    grade_confidences: Mapping[int, float] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if self.predicted_grade not in KL_GRADES:
            raise ValueError(f"predicted_grade must be one of {KL_GRADES}, got {self.predicted_grade!r}")
        for grade, value in self.grade_confidences.items():
            if grade not in KL_GRADES:
                raise ValueError(f"Unknown KL grade {grade!r} in grade_confidences")
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Confidence for grade {grade} out of range: {value!r}")
        expected = self.grade_confidences.get(self.predicted_grade, 0.0)
        if self.predicted_confidence != expected:
            raise ValueError(
                f"predicted_confidence {self.predicted_confidence!r} does not match "
                f"grade_confidences[{self.predicted_grade}] = {expected!r}"
            )
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "created_at", created.astimezone(timezone.utc))
        object.__setattr__(
            self,
            "grade_confidences",
            MappingProxyType(
                {grade: float(self.grade_confidences.get(grade, 0.0)) for grade in KL_GRADES}
            ),
        )

    @classmethod
    def from_remote(
        cls,
        remote: RemoteClassification,
        *,
        source_image_ref: str,
        heatmap_image_ref: str,
        created_at: datetime,
        record_id: str | None = None,
    ) -> ClassificationRecord:
        return cls(
            id=record_id or str(uuid.uuid4()),
            source_image_ref=source_image_ref,
            predicted_grade=remote.grade,
            predicted_confidence=remote.grade_confidences.get(remote.grade, 0.0),
            heatmap_image_ref=heatmap_image_ref,
            created_at=created_at,
            grade_confidences=dict(remote.grade_confidences),
        )


def encode_confidences(confidences: Mapping[int, float]) -> str:
    # repr() of a float parses back to the identical value.
    return ",".join(f"{grade}:{float(value)!r}" for grade, value in sorted(confidences.items()))


def decode_confidences(text: str) -> Dict[int, float]:
    decoded = {grade: 0.0 for grade in KL_GRADES}
    if not text:
        return decoded
    for entry in text.split(","):
        parts = entry.split(":")
        if len(parts) != 2:
            continue
        decoded[int(parts[0])] = float(parts[1])
    return decoded


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(text: str) -> datetime:
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def record_to_row(record: ClassificationRecord) -> tuple:
    return (
        record.id,
        record.source_image_ref,
        record.predicted_grade,
        record.predicted_confidence,
        record.heatmap_image_ref,
        format_timestamp(record.created_at),
        encode_confidences(record.grade_confidences),
    )


def row_to_record(row: Mapping[str, object]) -> ClassificationRecord:
    return ClassificationRecord(
        id=str(row["id"]),
        source_image_ref=str(row["source_image_ref"]),
        predicted_grade=int(row["predicted_grade"]),
        predicted_confidence=float(row["predicted_confidence"]),
        heatmap_image_ref=str(row["heatmap_image_ref"]),
        created_at=parse_timestamp(str(row["created_at"])),
        grade_confidences=decode_confidences(str(row["grade_confidences"])),
    )


class SQLiteHistoryStore:
    """Durable classification history backed by a SQLite file.

    The store must be opened before use, either explicitly with :meth:`open`
    and :meth:`close` or as a context manager. Every operation uses its own
    short-lived connection so reads always observe committed data; writes
    are serialised through a lock so replacements of one id never interleave.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._write_lock = threading.Lock()
        self._opened = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> SQLiteHistoryStore:
        if self._opened:
            return self
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with contextlib.closing(sqlite3.connect(str(self._path))) as conn:
                with conn:
                    conn.execute(_SCHEMA)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(f"Failed to open history database {self._path}: {exc}") from exc
        self._opened = True
        logger.info("Opened history store at %s", self._path)
        return self

    def close(self) -> None:
        if self._opened:
            self._opened = False
            logger.info("Closed history store at %s", self._path)

    def __enter__(self) -> SQLiteHistoryStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if not self._opened:
            raise StoreUnavailable("History store is not open")
        try:
            conn = sqlite3.connect(str(self._path))
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to open history database {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def list_all(self) -> List[ClassificationRecord]:
        """Return every record, newest first."""
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM {TABLE_NAME} ORDER BY created_at DESC, id ASC"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to retrieve history: {exc}") from exc
        return [self._decode(row) for row in rows]

    def get_by_id(self, record_id: str) -> Optional[ClassificationRecord]:
        with self._connect() as conn:
            try:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE id = ?", (record_id,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to retrieve classification: {exc}") from exc
        return self._decode(row) if row is not None else None

    def count(self) -> int:
        with self._connect() as conn:
            try:
                (total,) = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to count history: {exc}") from exc
        return int(total)

    def upsert(self, record: ClassificationRecord) -> None:
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    conn.execute(_UPSERT, record_to_row(record))
            except sqlite3.Error as exc:
                raise StoreWriteFailed(f"Failed to save classification {record.id}: {exc}") from exc
        logger.info(
            "Stored classification id=%s grade=%d confidence=%.3f",
            record.id,
            record.predicted_grade,
            record.predicted_confidence,
        )

    def delete_by_id(self, record_id: str) -> None:
        with self._write_lock, self._connect() as conn:
            try:
                with conn:
                    cursor = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (record_id,))
            except sqlite3.Error as exc:
                raise StoreWriteFailed(f"Failed to delete classification {record_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise RecordNotFound(record_id)
        logger.info("Deleted classification id=%s", record_id)

    def _decode(self, row: sqlite3.Row) -> ClassificationRecord:
        try:
            return row_to_record(row)
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailable(f"Corrupt history row {row['id']!r}: {exc}") from exc


__all__ = [
    "ClassificationRecord",
    "SQLiteHistoryStore",
    "encode_confidences",
    "decode_confidences",
    "format_timestamp",
    "parse_timestamp",
    "record_to_row",
    "row_to_record",
]
