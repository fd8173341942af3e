"""
Generation history using SQLite.

One row per generation attempt, successful or not. Rows are written once,
when the attempt is finalized, and are diagnostic: losing one to a crash
between completion and write is acceptable.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from .types import HistoryRecord

logger = logging.getLogger(__name__)


class HistoryStore:
    """SQLite-backed append-mostly audit log of generation attempts."""

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS generation_history (
                id TEXT PRIMARY KEY,
                note_id TEXT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_note
            ON generation_history(note_id, created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_created
            ON generation_history(created_at)
        """)
        self._conn.commit()

    def save(self, record: HistoryRecord) -> None:
        """Write a finalized record."""
        if not record.finalized:
            raise ValueError(f"History record {record.id} is not finalized")
        with self._lock:
            self._conn.execute("""
                INSERT INTO generation_history
                    (id, note_id, provider, model, status, created_at, record_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.note_id,
                record.provider,
                record.model,
                record.status.value,
                record.created_at,
                json.dumps(record.to_dict(), ensure_ascii=False),
            ))
            self._conn.commit()
        logger.debug("Saved history %s (%s)", record.id, record.status.value)

    def get(self, record_id: str) -> Optional[HistoryRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM generation_history WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            return None
        return HistoryRecord.from_dict(json.loads(row["record_json"]))

    def list_recent(self, limit: int = 20, note_id: Optional[str] = None) -> list[HistoryRecord]:
        """Most recent records first, optionally for one note."""
        if note_id is None:
            rows = self._conn.execute("""
                SELECT record_json FROM generation_history
                ORDER BY created_at DESC, rowid DESC LIMIT ?
            """, (limit,)).fetchall()
        else:
            rows = self._conn.execute("""
                SELECT record_json FROM generation_history
                WHERE note_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
            """, (note_id, limit)).fetchall()
        return [HistoryRecord.from_dict(json.loads(r["record_json"])) for r in rows]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM generation_history").fetchone()[0]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
