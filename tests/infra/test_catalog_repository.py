from __future__ import annotations

from pathlib import Path

import pytest

from catalog_mirror.engine.mapping import map_set
from catalog_mirror.errors import StorageWriteError
from catalog_mirror.infra import CatalogRepository


def test_persist_is_idempotent(memory_repository, set_payload) -> None:
    record = map_set(set_payload(100, item_count=3))
    memory_repository.persist_set(record, imported_at=10)
    memory_repository.persist_set(record, imported_at=20)
    counts = memory_repository.counts()
    assert counts["sets"] == 1
    assert counts["items"] == 3
    assert counts["search_rows"] == 3
    stored = memory_repository.load_set(100)
    assert [item.id for item in stored.items] == [1001, 1002, 1003]
    assert stored.title == "Song 100"


def test_persist_drops_items_removed_upstream(memory_repository, set_payload) -> None:
    memory_repository.persist_set(map_set(set_payload(100, item_count=3)))
    memory_repository.persist_set(map_set(set_payload(100, item_count=1)))
    counts = memory_repository.counts()
    assert counts["items"] == 1
    assert counts["search_rows"] == 1
    assert memory_repository.set_id_for_item(1001) == 100
    assert memory_repository.set_id_for_item(1003) is None


def test_variants_roundtrip(memory_repository, stored_set) -> None:
    stored_set(5, size=10, alt_size=99)
    stored_set(6, size=20)
    with_alt = memory_repository.load_set(5)
    assert with_alt.stripped.size == 10
    assert with_alt.alt_media.key == "archives/v1/5-alt.osz"
    assert memory_repository.load_set(6).alt_media is None


def test_membership_queries(memory_repository, stored_set) -> None:
    stored_set(1, ranked_date="2020-01-01T00:00:00Z")
    stored_set(2, ranked_date="2024-01-01T00:00:00Z")
    stored_set(3, ranked_date=None)
    assert memory_repository.known_set_ids([1, 2, 4]) == {1, 2}
    assert memory_repository.has_set(3)
    assert not memory_repository.has_set(4)
    assert memory_repository.set_ids_ranked_after(0) == [2, 1]
    assert memory_repository.set_ids_ranked_after(1_600_000_000) == [2]
    assert [record.id for record in memory_repository.load_sets([3, 99, 1])] == [3, 1]


def test_dump_watermark(memory_repository) -> None:
    assert memory_repository.last_dump_import() is None
    memory_repository.mark_dump_imported(1234)
    assert memory_repository.last_dump_import() == 1234


def test_full_text_search_finds_persisted_items(memory_repository, catalog, stored_set) -> None:
    stored_set(40, title="Ghost Rule", title_unicode="Ghost Rule")
    stored_set(41)
    page = catalog.search("ghost")
    assert page.total_sets == 1
    assert [record.id for record in page.sets] == [40]


def test_search_keeps_only_matching_items(catalog, stored_set) -> None:
    stored_set(50, item_count=3)
    page = catalog.search("stars>=7")
    assert page.total_sets == 1
    assert page.total_items == 1
    assert [item.id for item in page.sets[0].items] == [503]


def test_search_sort_and_paging(catalog, stored_set) -> None:
    stored_set(60, ranked_date="2021-01-01T00:00:00Z")
    stored_set(61, ranked_date="2023-01-01T00:00:00Z")
    stored_set(62, ranked_date="2022-01-01T00:00:00Z")
    page = catalog.search("", limit=2)
    assert page.total_sets == 3
    assert [record.id for record in page.sets] == [61, 62]
    page = catalog.search("", sort="ranked_asc", limit=2, offset=1)
    assert [record.id for record in page.sets] == [62, 61]


def test_aggregate_sizes(catalog, stored_set) -> None:
    stored_set(70, size=100, alt_size=300)
    stored_set(71, size=50)
    totals = catalog.aggregate_sizes("camellia")
    assert (totals.count, totals.size_stripped, totals.size_full) == (2, 150, 350)


def test_database_file_is_created_with_schema(tmp_path: Path, manager) -> None:
    conn = manager.connect(tmp_path / "nested" / "catalog.db")
    repository = CatalogRepository(manager, conn)
    assert repository.counts() == {"sets": 0, "items": 0, "search_rows": 0, "packs": 0}
    assert (tmp_path / "nested" / "catalog.db").exists()


def test_failed_transactions_roll_back(memory_repository) -> None:
    conn = memory_repository.conn
    with pytest.raises(StorageWriteError):
        with memory_repository.manager.transaction(conn):
            conn.execute("INSERT INTO misc(key, value) VALUES ('a', '1')")
            conn.execute("INSERT INTO misc(key, value) VALUES ('a', '2')")
    assert conn.execute("SELECT COUNT(*) FROM misc").fetchone()[0] == 0


def test_failed_commit_rolls_back_and_keeps_connection_usable(memory_repository) -> None:
    conn = memory_repository.conn
    manager = memory_repository.manager
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("CREATE TABLE parent(id INTEGER PRIMARY KEY)")
    conn.execute(
        "CREATE TABLE child(parent_id INTEGER REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
    )

    # deferred foreign keys are only checked at COMMIT
    with pytest.raises(StorageWriteError, match="Commit failed"):
        with manager.transaction(conn):
            conn.execute("INSERT INTO child(parent_id) VALUES (1)")

    assert not conn.in_transaction
    assert conn.execute("SELECT COUNT(*) FROM child").fetchone()[0] == 0
    with manager.transaction(conn):
        manager.write_misc(conn, "last_dump_import", 1_700_000_000)
    assert manager.read_misc(conn, "last_dump_import") == "1700000000"
