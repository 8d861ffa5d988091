"""Execute compiled catalog queries against the relational store."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from ..infra.catalog_store import CatalogRepository
from .mapping import SetRecord
from .query import CompiledQuery, QueryCompiler, order_by


@dataclass(slots=True)
class SearchPage:
    total_sets: int
    total_items: int
    limit: int
    offset: int
    sets: list[SetRecord] = field(default_factory=list)


@dataclass(slots=True)
class SizeTotals:
    count: int
    size_stripped: int
    size_full: int


class CatalogSearch:
    """Run filter-language searches; results are grouped by set."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        repository: CatalogRepository,
        compiler: QueryCompiler | None = None,
    ) -> None:
        self.conn = conn
        self.repository = repository
        self.compiler = compiler or QueryCompiler()

    def _matching_rows(self, compiled: CompiledQuery) -> str:
        rank = ", catalog_search.rank AS match_rank" if compiled.join_search else ""
        return (
            "SELECT s.id AS set_id, i.id AS item_id, s.time_ranked AS time_ranked, "
            "s.time_submitted AS time_submitted, i.stars AS stars, i.bpm AS bpm, "
            f"i.length AS length, s.title AS title, s.artist AS artist{rank}\n"
            f"{compiled.from_clause}\n{compiled.where_clause}"
        )

    def search(self, query: str = "", sort: str = "auto", limit: int = 50, offset: int = 0) -> SearchPage:
        compiled = self.compiler.compile(query)
        ordering = order_by(sort, compiled)
        inner = self._matching_rows(compiled)
        totals = self.conn.execute(
            f"SELECT COUNT(DISTINCT set_id) AS sets, COUNT(DISTINCT item_id) AS items FROM ({inner})",
            compiled.params,
        ).fetchone()
        rows = self.conn.execute(
            f"SELECT set_id FROM ({inner}) GROUP BY set_id ORDER BY {ordering} LIMIT ? OFFSET ?",
            [*compiled.params, limit, offset],
        ).fetchall()
        set_ids = [row["set_id"] for row in rows]
        matched_items = self._matched_item_ids(compiled, set_ids)
        sets = self.repository.load_sets(set_ids)
        for record in sets:
            wanted = matched_items.get(record.id)
            if wanted is not None:
                record.items = [item for item in record.items if item.id in wanted]
        return SearchPage(
            total_sets=int(totals["sets"]),
            total_items=int(totals["items"]),
            limit=limit,
            offset=offset,
            sets=sets,
        )

    def _matched_item_ids(self, compiled: CompiledQuery, set_ids: list[int]) -> dict[int, set[int]]:
        if not set_ids or not compiled.where:
            return {}
        placeholders = ", ".join("?" for _ in set_ids)
        rows = self.conn.execute(
            f"SELECT set_id, item_id FROM ({self._matching_rows(compiled)}) "
            f"WHERE set_id IN ({placeholders})",
            [*compiled.params, *set_ids],
        )
        matched: dict[int, set[int]] = {}
        for row in rows:
            matched.setdefault(row["set_id"], set()).add(row["item_id"])
        return matched

    def search_ids(self, query: str = "") -> list[int]:
        compiled = self.compiler.compile(query)
        rows = self.conn.execute(
            f"SELECT DISTINCT s.id AS id\n{compiled.from_clause}\n{compiled.where_clause}\nORDER BY s.id",
            compiled.params,
        )
        return [row["id"] for row in rows]

    def aggregate_sizes(self, query: str = "") -> SizeTotals:
        compiled = self.compiler.compile(query)
        row = self.conn.execute(
            "SELECT COUNT(id) AS count, "
            "COALESCE(SUM(archive_size), 0) AS size_stripped, "
            "COALESCE(SUM(COALESCE(alt_archive_size, archive_size)), 0) AS size_full "
            "FROM (SELECT DISTINCT s.id AS id, s.archive_size AS archive_size, "
            "s.alt_archive_size AS alt_archive_size\n"
            f"{compiled.from_clause}\n{compiled.where_clause})",
            compiled.params,
        ).fetchone()
        return SizeTotals(
            count=int(row["count"]),
            size_stripped=int(row["size_stripped"]),
            size_full=int(row["size_full"]),
        )


__all__ = ["CatalogSearch", "SearchPage", "SizeTotals"]
