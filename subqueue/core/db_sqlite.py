"""
SQLite key-value store for SubtitleQueue.
Values are JSON documents. Thread-safe via check_same_thread=False +
explicit locking.
"""

import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from subqueue.core.constants import DB_PATH

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
"""


class Database:
    """SQLite-backed persistent store keyed by string."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self._lock = threading.RLock()
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ── Key-value API ─────────────────────────────────────────────────

    def get(self, key: str, default=None):
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        return json.loads(row['value'])

    def set(self, key: str, value):
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self.conn.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, payload, self._now()),
            )
            self.conn.commit()

    def delete(self, key: str):
        with self._lock:
            self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self.conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        # LIKE would treat '_' in prefixes as a wildcard
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [r['key'] for r in rows]
