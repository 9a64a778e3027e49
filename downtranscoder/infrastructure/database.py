"""SQLite connection shared by the media catalog and the status store."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

SCHEMA = """
CREATE TABLE IF NOT EXISTS media_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id INTEGER NOT NULL,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'found',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    transcode_preset TEXT,
    abort_reason TEXT,
    transcode_progress INTEGER,
    UNIQUE (file_id, owner_id)
);
CREATE INDEX IF NOT EXISTS idx_media_items_state ON media_items (state);
CREATE INDEX IF NOT EXISTS idx_media_items_owner ON media_items (owner_id);

CREATE TABLE IF NOT EXISTS scan_status (
    scope TEXT PRIMARY KEY,
    is_scanning INTEGER NOT NULL DEFAULT 0,
    started_at INTEGER,
    completed_at INTEGER,
    files_found INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS queue_status (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    is_transcoding INTEGER NOT NULL DEFAULT 0,
    current_index INTEGER NOT NULL DEFAULT 0,
    total_items INTEGER NOT NULL DEFAULT 0,
    current_file TEXT,
    started_at INTEGER,
    completed_at INTEGER
);
INSERT OR IGNORE INTO queue_status (id) VALUES (1);
"""


class Database:
    """Thread-safe wrapper around one sqlite3 connection.

    The connection runs in autocommit mode; ``transaction()`` opens an
    immediate transaction so read-then-write sequences are atomic, also
    against other processes using the same file.
    """

    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path,
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def query(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
