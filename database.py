"""SQLite-backed catalog store: an expiring key/value cache and the models table."""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

SCHEMA = """
CREATE TABLE IF NOT EXISTS models (
    id TEXT PRIMARY KEY,
    group_name TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


@dataclass(frozen=True)
class ModelRecord:
    id: str
    group: str
    created_at: int = 0
    updated_at: int = 0


class CatalogStore:
    """Thread-safe store; every statement runs under one lock so a reader
    never observes a half-replaced models table."""

    def __init__(self, path: Union[str, Path] = ":memory:", clock: Callable[[], float] = time.time):
        self.path = str(path)
        self.clock = clock
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            self._conn.executescript(SCHEMA)
        logger.info(f"Catalog store opened at {self.path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    def get_cache(self, key: str) -> Optional[Any]:
        """Return the decoded value, or None when missing or expired."""
        conn = self.conn
        with self._lock:
            row = conn.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?",
                (key, self.clock()),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry: {key}")
            return None

    def set_cache(self, key: str, value: Any, ttl_days: float) -> float:
        expires_at = self.clock() + ttl_days * SECONDS_PER_DAY
        conn = self.conn
        with self._lock:
            conn.execute(
                "INSERT OR REPLACE INTO cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), expires_at),
            )
        return expires_at

    def replace_models(self, records: Iterable[ModelRecord]) -> list[ModelRecord]:
        """Swap the whole models table in a single transaction."""
        now = int(self.clock())
        rows = [ModelRecord(r.id, r.group, now, now) for r in records]
        conn = self.conn
        with self._lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM models")
                conn.executemany(
                    "INSERT OR REPLACE INTO models (id, group_name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    [(r.id, r.group, r.created_at, r.updated_at) for r in rows],
                )
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return rows

    def get_models(self) -> list[ModelRecord]:
        conn = self.conn
        with self._lock:
            rows = conn.execute(
                "SELECT id, group_name, created_at, updated_at FROM models ORDER BY rowid"
            ).fetchall()
        return [ModelRecord(*row) for row in rows]

    def find_group(self, model_id: str) -> Optional[str]:
        conn = self.conn
        with self._lock:
            row = conn.execute("SELECT group_name FROM models WHERE id = ?", (model_id,)).fetchone()
        return row[0] if row else None
