"""SQLite connection management, schema and transaction scoping."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator

from ..errors import StorageWriteError

DEFAULT_TOKENIZER = "unicode61 remove_diacritics 2"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sets (
    id INTEGER PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    title_unicode TEXT NOT NULL DEFAULT '',
    artist TEXT NOT NULL DEFAULT '',
    artist_unicode TEXT NOT NULL DEFAULT '',
    creator TEXT NOT NULL DEFAULT '',
    creator_id INTEGER,
    source TEXT NOT NULL DEFAULT '',
    language TEXT NOT NULL DEFAULT '',
    genre TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '',
    status INTEGER NOT NULL DEFAULT 0,
    time_submitted INTEGER,
    time_ranked INTEGER,
    is_download_disabled INTEGER NOT NULL DEFAULT 0,
    is_nsfw INTEGER NOT NULL DEFAULT 0,
    has_video INTEGER NOT NULL DEFAULT 0,
    archive_key TEXT,
    archive_size INTEGER,
    archive_sha256 TEXT,
    alt_archive_key TEXT,
    alt_archive_size INTEGER,
    alt_archive_sha256 TEXT,
    time_imported INTEGER
);
CREATE INDEX IF NOT EXISTS idx_sets_time_ranked ON sets(time_ranked);

CREATE TABLE IF NOT EXISTS items (
    id INTEGER PRIMARY KEY,
    set_id INTEGER NOT NULL,
    mode INTEGER NOT NULL DEFAULT 0,
    status INTEGER NOT NULL DEFAULT 0,
    version TEXT NOT NULL DEFAULT '',
    length INTEGER NOT NULL DEFAULT 0,
    stars REAL NOT NULL DEFAULT 0,
    bpm REAL NOT NULL DEFAULT 0,
    cs REAL NOT NULL DEFAULT 0,
    ar REAL NOT NULL DEFAULT 0,
    od REAL NOT NULL DEFAULT 0,
    hp REAL NOT NULL DEFAULT 0,
    count_circles INTEGER NOT NULL DEFAULT 0,
    count_sliders INTEGER NOT NULL DEFAULT 0,
    count_spinners INTEGER NOT NULL DEFAULT 0,
    checksum TEXT
);
CREATE INDEX IF NOT EXISTS idx_items_set_id ON items(set_id);

CREATE TABLE IF NOT EXISTS misc (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS pack_contents (
    sha256 TEXT PRIMARY KEY,
    ids_json TEXT NOT NULL,
    count INTEGER NOT NULL,
    size_stripped INTEGER NOT NULL DEFAULT 0,
    size_full INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS pack_content_members (
    sha256 TEXT NOT NULL,
    set_id INTEGER NOT NULL,
    PRIMARY KEY (sha256, set_id)
);

CREATE TABLE IF NOT EXISTS packs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('static', 'query')),
    creator_id INTEGER,
    content_sha256 TEXT,
    query TEXT,
    download_count INTEGER NOT NULL DEFAULT 0,
    time_created INTEGER NOT NULL,
    time_updated INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_packs_content ON packs(content_sha256);
"""

_SEARCH_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS catalog_search USING fts5(
    title, title_unicode, artist, artist_unicode, creator, source, tags, version,
    tokenize = '{tokenizer}'
)
"""


class SQLiteManager:
    """Manage SQLite connections with schema guarantees."""

    def __init__(self, tokenizer: str = DEFAULT_TOKENIZER) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()
        self.tokenizer = tokenizer

    def connect(self, path: Path) -> sqlite3.Connection:
        path = Path(path)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                # Autocommit mode; transactions are opened explicitly.
                conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA busy_timeout = 15000")
                if str(path) != ":memory:":
                    conn.execute("PRAGMA journal_mode = WAL")
                    conn.execute("PRAGMA synchronous = NORMAL")
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_SCHEMA)
        tokenizer = self.tokenizer.replace("'", "")
        conn.execute(_SEARCH_TABLE.format(tokenizer=tokenizer))

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        # some errors already end the transaction inside SQLite
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextmanager
    def transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` / ``COMMIT``, rolling back on error.

        A failed ``COMMIT`` is rolled back as well, so the shared connection
        never stays inside an open transaction.
        """

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StorageWriteError(f"Could not open transaction: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageWriteError(str(exc)) from exc
        except BaseException:
            self._rollback(conn)
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageWriteError(f"Commit failed: {exc}") from exc

    def optimize_search_index(self, conn: sqlite3.Connection) -> None:
        conn.execute("INSERT INTO catalog_search(catalog_search) VALUES('optimize')")

    # ------------------------------------------------------------------
    # misc key/value
    # ------------------------------------------------------------------
    @staticmethod
    def read_misc(conn: sqlite3.Connection, key: str) -> str | None:
        row = conn.execute("SELECT value FROM misc WHERE key = ?", (key,)).fetchone()
        return None if row is None else row["value"]

    @staticmethod
    def write_misc(conn: sqlite3.Connection, key: str, value: str | int | None) -> None:
        conn.execute(
            "INSERT INTO misc(key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, None if value is None else str(value)),
        )

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["DEFAULT_TOKENIZER", "SQLiteManager"]
