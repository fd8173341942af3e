"""
Key/value settings table using SQLite.

Holds JSON-serialized values under string keys:
- "ai_settings": active configuration and generation parameters
- "api_key_<provider>": encrypted credential records
- "provider_model_<provider>": preferred model per provider
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from .types import utc_now


class SettingsStore:
    """
    SQLite-backed generic configuration table.

    Values are stored as JSON text. Reads of a missing key return the
    supplied default.
    """

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

        # WAL lets the history table and this one be written from one
        # process while another reads
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for key, or default."""
        row = self._conn.execute(
            "SELECT value FROM ai_config WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        """Insert or replace key, keeping the original created_at."""
        now = utc_now()
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._conn.execute("""
                INSERT INTO ai_config (key, value, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, encoded, now, now))
            self._conn.commit()

    def delete(self, key: str) -> bool:
        """Delete key. Returns True if a row was removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM ai_config WHERE key = ?", (key,))
            self._conn.commit()
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        """List keys, optionally only those starting with prefix."""
        rows = self._conn.execute(
            "SELECT key FROM ai_config WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (_escape_like(prefix) + "%",),
        ).fetchall()
        return [row["key"] for row in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
