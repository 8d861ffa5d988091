"""Content-addressed, reference-counted pack storage."""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Iterable

import structlog

from ..infra.storage import SQLiteManager
from .search import CatalogSearch

PACK_KINDS = ("static", "query")


def canonical_ids(ids: Iterable[int | str]) -> list[int]:
    """Deduplicate, coerce to int and sort ascending."""

    return sorted({int(value) for value in ids})


def content_hash(ids: Iterable[int | str]) -> tuple[str, list[int]]:
    canonical = canonical_ids(ids)
    serialised = json.dumps(canonical, separators=(",", ":"))
    return hashlib.sha256(serialised.encode("utf-8")).hexdigest(), canonical


@dataclass(slots=True)
class PackContentEntry:
    sha256: str
    ids: list[int]
    count: int
    size_stripped: int
    size_full: int


@dataclass(slots=True)
class Pack:
    id: int
    name: str
    kind: str
    creator_id: int | None
    content_sha256: str | None
    query: str | None
    download_count: int
    time_created: int
    time_updated: int


@dataclass(slots=True)
class PackView:
    """A pack with its membership resolved (live for query packs)."""

    pack: Pack
    set_ids: list[int] = field(default_factory=list)
    count: int = 0
    size_stripped: int = 0
    size_full: int = 0


class PackStore:
    """Create, edit and garbage-collect packs on the catalog database."""

    def __init__(
        self,
        manager: SQLiteManager,
        conn: sqlite3.Connection,
        search: CatalogSearch,
        size_slice: int = 500,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.manager = manager
        self.conn = conn
        self.search = search
        self.size_slice = size_slice
        self.logger = logger or structlog.get_logger("catalog_mirror.packs")

    # ------------------------------------------------------------------
    # Content entries
    # ------------------------------------------------------------------
    def _aggregate_sizes(self, conn: sqlite3.Connection, ids: list[int]) -> tuple[int, int]:
        stripped = full = 0
        for start in range(0, len(ids), self.size_slice):
            chunk = ids[start:start + self.size_slice]
            placeholders = ", ".join("?" for _ in chunk)
            row = conn.execute(
                "SELECT COALESCE(SUM(archive_size), 0) AS stripped, "
                "COALESCE(SUM(COALESCE(alt_archive_size, archive_size)), 0) AS full "
                f"FROM sets WHERE id IN ({placeholders})",
                chunk,
            ).fetchone()
            stripped += int(row["stripped"])
            full += int(row["full"])
        return stripped, full

    def _ensure_content(self, conn: sqlite3.Connection, ids: Iterable[int | str]) -> PackContentEntry:
        digest, canonical = content_hash(ids)
        existing = self._load_content(conn, digest)
        if existing is not None:
            return existing
        stripped, full = self._aggregate_sizes(conn, canonical)
        conn.execute(
            "INSERT INTO pack_contents(sha256, ids_json, count, size_stripped, size_full) VALUES (?, ?, ?, ?, ?)",
            (digest, json.dumps(canonical, separators=(",", ":")), len(canonical), stripped, full),
        )
        conn.executemany(
            "INSERT INTO pack_content_members(sha256, set_id) VALUES (?, ?)",
            [(digest, set_id) for set_id in canonical],
        )
        return PackContentEntry(digest, canonical, len(canonical), stripped, full)

    @staticmethod
    def _load_content(conn: sqlite3.Connection, digest: str) -> PackContentEntry | None:
        row = conn.execute("SELECT * FROM pack_contents WHERE sha256 = ?", (digest,)).fetchone()
        if row is None:
            return None
        return PackContentEntry(
            sha256=row["sha256"],
            ids=json.loads(row["ids_json"]),
            count=row["count"],
            size_stripped=row["size_stripped"],
            size_full=row["size_full"],
        )

    def create_content_entry(self, ids: Iterable[int | str]) -> PackContentEntry:
        with self.manager.transaction(self.conn) as conn:
            return self._ensure_content(conn, ids)

    def get_content_entry(self, digest: str) -> PackContentEntry | None:
        return self._load_content(self.conn, digest)

    def _collect_garbage(self, conn: sqlite3.Connection, digest: str | None) -> bool:
        """Delete ``digest`` if no pack references it; runs in the caller's transaction."""

        if not digest:
            return False
        refs = conn.execute(
            "SELECT COUNT(*) FROM packs WHERE content_sha256 = ?", (digest,)
        ).fetchone()[0]
        if refs:
            return False
        conn.execute("DELETE FROM pack_content_members WHERE sha256 = ?", (digest,))
        conn.execute("DELETE FROM pack_contents WHERE sha256 = ?", (digest,))
        self.logger.debug("pack_content_collected", sha256=digest)
        return True

    # ------------------------------------------------------------------
    # Packs
    # ------------------------------------------------------------------
    @staticmethod
    def _pack_from_row(row: sqlite3.Row) -> Pack:
        return Pack(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            creator_id=row["creator_id"],
            content_sha256=row["content_sha256"],
            query=row["query"],
            download_count=row["download_count"],
            time_created=row["time_created"],
            time_updated=row["time_updated"],
        )

    def load_pack(self, pack_id: int) -> Pack | None:
        row = self.conn.execute("SELECT * FROM packs WHERE id = ?", (pack_id,)).fetchone()
        return None if row is None else self._pack_from_row(row)

    def create_pack(
        self,
        name: str,
        kind: str,
        creator_id: int | None,
        ids: Iterable[int | str] | None = None,
        query: str | None = None,
    ) -> Pack:
        if kind not in PACK_KINDS:
            raise ValueError(f"Unknown pack kind: {kind!r}")
        if kind == "query" and not (query or "").strip():
            raise ValueError("Query packs need a filter query")
        now = int(time.time())
        with self.manager.transaction(self.conn) as conn:
            digest = None
            if kind == "static":
                digest = self._ensure_content(conn, ids or []).sha256
            cursor = conn.execute(
                "INSERT INTO packs(name, kind, creator_id, content_sha256, query, time_created, time_updated) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (name, kind, creator_id, digest, query if kind == "query" else None, now, now),
            )
            pack_id = cursor.lastrowid
        self.logger.info("pack_created", pack_id=pack_id, kind=kind, sha256=digest)
        return self.load_pack(pack_id)

    def edit_pack_membership(
        self, pack_id: int, edit: Callable[[list[int]], Iterable[int | str]]
    ) -> Pack:
        """Apply ``edit`` to a static pack's ids, repoint it and collect the old entry."""

        with self.manager.transaction(self.conn) as conn:
            row = conn.execute("SELECT * FROM packs WHERE id = ?", (pack_id,)).fetchone()
            if row is None:
                raise KeyError(f"Pack {pack_id} not found")
            if row["kind"] != "static":
                raise ValueError("Only static packs have editable membership")
            old_digest = row["content_sha256"]
            current = self._load_content(conn, old_digest) if old_digest else None
            entry = self._ensure_content(conn, edit(list(current.ids) if current else []))
            conn.execute(
                "UPDATE packs SET content_sha256 = ?, time_updated = ? WHERE id = ?",
                (entry.sha256, int(time.time()), pack_id),
            )
            if old_digest != entry.sha256:
                self._collect_garbage(conn, old_digest)
        return self.load_pack(pack_id)

    def add_to_pack(self, pack_id: int, ids: Iterable[int | str]) -> Pack:
        additions = list(ids)
        return self.edit_pack_membership(pack_id, lambda current: itertools.chain(current, additions))

    def remove_from_pack(self, pack_id: int, ids: Iterable[int | str]) -> Pack:
        removals = set(canonical_ids(ids))
        return self.edit_pack_membership(
            pack_id, lambda current: [set_id for set_id in current if set_id not in removals]
        )

    def add_query_to_pack(self, pack_id: int, query: str) -> Pack:
        """Freeze the current results of ``query`` into a static pack."""

        matches = self.search.search_ids(query)
        return self.add_to_pack(pack_id, matches)

    def delete_pack(self, pack_id: int) -> bool:
        with self.manager.transaction(self.conn) as conn:
            row = conn.execute("SELECT content_sha256 FROM packs WHERE id = ?", (pack_id,)).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM packs WHERE id = ?", (pack_id,))
            self._collect_garbage(conn, row["content_sha256"])
        self.logger.info("pack_deleted", pack_id=pack_id)
        return True

    def record_download(self, pack_id: int) -> None:
        with self.manager.transaction(self.conn) as conn:
            conn.execute("UPDATE packs SET download_count = download_count + 1 WHERE id = ?", (pack_id,))

    def get_pack(self, pack_id: int) -> PackView | None:
        pack = self.load_pack(pack_id)
        if pack is None:
            return None
        if pack.kind == "query":
            set_ids = self.search.search_ids(pack.query or "")
            sizes = self.search.aggregate_sizes(pack.query or "")
            return PackView(pack, set_ids, sizes.count, sizes.size_stripped, sizes.size_full)
        entry = self._load_content(self.conn, pack.content_sha256) if pack.content_sha256 else None
        if entry is None:
            return PackView(pack)
        return PackView(pack, list(entry.ids), entry.count, entry.size_stripped, entry.size_full)

    def list_packs(self, creator_id: int | None = None) -> list[Pack]:
        if creator_id is None:
            rows = self.conn.execute("SELECT * FROM packs ORDER BY id")
        else:
            rows = self.conn.execute("SELECT * FROM packs WHERE creator_id = ? ORDER BY id", (creator_id,))
        return [self._pack_from_row(row) for row in rows]


# ----------------------------------------------------------------------
# Download instances
# ----------------------------------------------------------------------
@dataclass(slots=True)
class DownloadInstance:
    pack_id: int
    total: int
    completed: int = 0
    failed: int = 0
    started: float = field(default_factory=time.time)

    @property
    def finished(self) -> bool:
        return self.completed + self.failed >= self.total


class DownloadInstanceTracker:
    """In-memory progress counters for pack export sessions."""

    def __init__(self, store: PackStore | None = None) -> None:
        self._instances: dict[str, DownloadInstance] = {}
        self._lock = Lock()
        self.store = store

    def start(self, instance_id: str, pack_id: int, total: int) -> DownloadInstance:
        with self._lock:
            instance = DownloadInstance(pack_id=pack_id, total=total)
            self._instances[instance_id] = instance
            return instance

    def advance(self, instance_id: str, ok: bool = True) -> DownloadInstance:
        with self._lock:
            instance = self._instances[instance_id]
            already_finished = instance.finished
            if ok:
                instance.completed += 1
            else:
                instance.failed += 1
            finished = instance.finished and not already_finished
        if finished and self.store is not None:
            self.store.record_download(instance.pack_id)
        return instance

    def get(self, instance_id: str) -> DownloadInstance | None:
        return self._instances.get(instance_id)

    def discard(self, instance_id: str) -> None:
        with self._lock:
            self._instances.pop(instance_id, None)


__all__ = [
    "DownloadInstance",
    "DownloadInstanceTracker",
    "PACK_KINDS",
    "Pack",
    "PackContentEntry",
    "PackStore",
    "PackView",
    "canonical_ids",
    "content_hash",
]
