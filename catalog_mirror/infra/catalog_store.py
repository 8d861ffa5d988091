"""Relational persistence of sets, items and their search index rows."""

from __future__ import annotations

import sqlite3
import time
from typing import Iterable

from ..engine.mapping import ItemRecord, SetRecord, VariantDescriptor
from .storage import SQLiteManager

DUMP_WATERMARK_KEY = "last_dump_import_time"

_SET_COLUMNS = (
    "id",
    "title",
    "title_unicode",
    "artist",
    "artist_unicode",
    "creator",
    "creator_id",
    "source",
    "language",
    "genre",
    "tags",
    "status",
    "time_submitted",
    "time_ranked",
    "is_download_disabled",
    "is_nsfw",
    "has_video",
    "archive_key",
    "archive_size",
    "archive_sha256",
    "alt_archive_key",
    "alt_archive_size",
    "alt_archive_sha256",
    "time_imported",
)
_ITEM_COLUMNS = (
    "id",
    "set_id",
    "mode",
    "status",
    "version",
    "length",
    "stars",
    "bpm",
    "cs",
    "ar",
    "od",
    "hp",
    "count_circles",
    "count_sliders",
    "count_spinners",
    "checksum",
)
_SEARCH_COLUMNS = (
    "title",
    "title_unicode",
    "artist",
    "artist_unicode",
    "creator",
    "source",
    "tags",
    "version",
)


def _set_row(record: SetRecord, imported_at: int) -> tuple:
    stripped = record.stripped
    alt = record.alt_media
    return (
        record.id,
        record.title,
        record.title_unicode,
        record.artist,
        record.artist_unicode,
        record.creator,
        record.creator_id,
        record.source,
        record.language,
        record.genre,
        record.tags,
        record.status,
        record.time_submitted,
        record.time_ranked,
        int(record.is_download_disabled),
        int(record.is_nsfw),
        int(record.has_video),
        stripped.key if stripped else None,
        stripped.size if stripped else None,
        stripped.sha256 if stripped else None,
        alt.key if alt else None,
        alt.size if alt else None,
        alt.sha256 if alt else None,
        imported_at,
    )


def _item_row(item: ItemRecord) -> tuple:
    return tuple(getattr(item, column) for column in _ITEM_COLUMNS)


def _item_from_row(row: sqlite3.Row) -> ItemRecord:
    return ItemRecord(**{column: row[column] for column in _ITEM_COLUMNS})


def _set_from_row(row: sqlite3.Row, items: list[ItemRecord]) -> SetRecord:
    stripped = (
        VariantDescriptor(row["archive_key"], row["archive_size"], row["archive_sha256"])
        if row["archive_key"]
        else None
    )
    alt = (
        VariantDescriptor(row["alt_archive_key"], row["alt_archive_size"], row["alt_archive_sha256"])
        if row["alt_archive_key"]
        else None
    )
    return SetRecord(
        id=row["id"],
        title=row["title"],
        title_unicode=row["title_unicode"],
        artist=row["artist"],
        artist_unicode=row["artist_unicode"],
        creator=row["creator"],
        creator_id=row["creator_id"],
        source=row["source"],
        language=row["language"],
        genre=row["genre"],
        tags=row["tags"],
        status=row["status"],
        time_submitted=row["time_submitted"],
        time_ranked=row["time_ranked"],
        is_download_disabled=bool(row["is_download_disabled"]),
        is_nsfw=bool(row["is_nsfw"]),
        has_video=bool(row["has_video"]),
        items=items,
        stripped=stripped,
        alt_media=alt,
    )


class CatalogRepository:
    """Read and write catalog rows on one SQLite connection."""

    def __init__(self, manager: SQLiteManager, conn: sqlite3.Connection) -> None:
        self.manager = manager
        self.conn = conn

    def persist_set(self, record: SetRecord, imported_at: int | None = None) -> None:
        """Replace the set row, its items and their search rows in one transaction."""

        stamp = int(imported_at if imported_at is not None else time.time())
        set_placeholders = ", ".join("?" for _ in _SET_COLUMNS)
        item_placeholders = ", ".join("?" for _ in _ITEM_COLUMNS)
        search_placeholders = ", ".join("?" for _ in _SEARCH_COLUMNS)
        with self.manager.transaction(self.conn) as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO sets ({', '.join(_SET_COLUMNS)}) VALUES ({set_placeholders})",
                _set_row(record, stamp),
            )
            existing = {
                row["id"]
                for row in conn.execute("SELECT id FROM items WHERE set_id = ?", (record.id,))
            }
            new_ids = {item.id for item in record.items}
            for stale_id in existing - new_ids:
                conn.execute("DELETE FROM items WHERE id = ?", (stale_id,))
                conn.execute("DELETE FROM catalog_search WHERE rowid = ?", (stale_id,))
            for item in record.items:
                already_present = item.id in existing or conn.execute(
                    "SELECT 1 FROM items WHERE id = ?", (item.id,)
                ).fetchone() is not None
                conn.execute("DELETE FROM items WHERE id = ?", (item.id,))
                conn.execute(
                    f"INSERT INTO items ({', '.join(_ITEM_COLUMNS)}) VALUES ({item_placeholders})",
                    _item_row(item),
                )
                if already_present:
                    conn.execute("DELETE FROM catalog_search WHERE rowid = ?", (item.id,))
                conn.execute(
                    f"INSERT INTO catalog_search (rowid, {', '.join(_SEARCH_COLUMNS)}) "
                    f"VALUES (?, {search_placeholders})",
                    (
                        item.id,
                        record.title,
                        record.title_unicode,
                        record.artist,
                        record.artist_unicode,
                        record.creator,
                        record.source,
                        record.tags,
                        item.version,
                    ),
                )

    def load_set(self, set_id: int) -> SetRecord | None:
        row = self.conn.execute("SELECT * FROM sets WHERE id = ?", (set_id,)).fetchone()
        if row is None:
            return None
        items = [
            _item_from_row(item)
            for item in self.conn.execute("SELECT * FROM items WHERE set_id = ? ORDER BY id", (set_id,))
        ]
        return _set_from_row(row, items)

    def load_sets(self, set_ids: Iterable[int]) -> list[SetRecord]:
        records = []
        for set_id in set_ids:
            record = self.load_set(set_id)
            if record is not None:
                records.append(record)
        return records

    def has_set(self, set_id: int) -> bool:
        return self.conn.execute("SELECT 1 FROM sets WHERE id = ?", (set_id,)).fetchone() is not None

    def set_id_for_item(self, item_id: int) -> int | None:
        row = self.conn.execute("SELECT set_id FROM items WHERE id = ?", (item_id,)).fetchone()
        return None if row is None else int(row["set_id"])

    def known_set_ids(self, set_ids: Iterable[int]) -> set[int]:
        ids = list(set_ids)
        known: set[int] = set()
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            known.update(
                row["id"]
                for row in self.conn.execute(f"SELECT id FROM sets WHERE id IN ({placeholders})", chunk)
            )
        return known

    def set_ids_ranked_after(self, cutoff: int = 0) -> list[int]:
        rows = self.conn.execute(
            "SELECT id FROM sets WHERE COALESCE(time_ranked, 0) > ? ORDER BY time_ranked DESC",
            (cutoff,),
        )
        return [row["id"] for row in rows]

    def counts(self) -> dict[str, int]:
        def _count(sql: str) -> int:
            return int(self.conn.execute(sql).fetchone()[0])

        return {
            "sets": _count("SELECT COUNT(*) FROM sets"),
            "items": _count("SELECT COUNT(*) FROM items"),
            "search_rows": _count("SELECT COUNT(*) FROM catalog_search"),
            "packs": _count("SELECT COUNT(*) FROM packs"),
        }

    # ------------------------------------------------------------------
    # dump watermark
    # ------------------------------------------------------------------
    def last_dump_import(self) -> int | None:
        value = self.manager.read_misc(self.conn, DUMP_WATERMARK_KEY)
        return int(value) if value else None

    def mark_dump_imported(self, when: int | None = None) -> None:
        with self.manager.transaction(self.conn) as conn:
            self.manager.write_misc(conn, DUMP_WATERMARK_KEY, int(when if when is not None else time.time()))


__all__ = ["CatalogRepository", "DUMP_WATERMARK_KEY"]
