"""Core facade consumed by the CLI and the scheduler."""

from __future__ import annotations

import re
import time
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import httpx

from .config import ConfigLocator, Settings
from .engine.downloader import ArchiveDownloader
from .engine.packs import DownloadInstanceTracker, Pack, PackStore, PackView
from .engine.search import CatalogSearch, SearchPage, SizeTotals
from .engine.upstream import UpstreamClient, build_upstream_client
from .infra import CatalogRepository, ObjectStore, S3ObjectStore, SQLiteManager
from .logging_conf import configure_logging
from .orchestrator import BatchProgress, ImportOrchestrator
from .scanner import ChangeScanner, ScanReport

_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*]')


def sanitise_filename(name: str) -> str:
    return _UNSAFE_FILENAME.sub("_", name).strip()


class CatalogApi:
    """Operations exposed to the presentation layer."""

    def __init__(
        self,
        settings: Settings,
        manager: SQLiteManager,
        conn,
        upstream: UpstreamClient,
        downloader: ArchiveDownloader,
        object_store: ObjectStore,
        work_dir: Path,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.manager = manager
        self.conn = conn
        self.upstream = upstream
        self.downloader = downloader
        self.object_store = object_store
        self._clock = clock or time.time
        self.logger = configure_logging().bind(component="api")
        self.repository = CatalogRepository(manager, conn)
        self.catalog = CatalogSearch(conn, self.repository)
        self.packs = PackStore(manager, conn, self.catalog, size_slice=settings.scan.pack_size_slice)
        self.downloads = DownloadInstanceTracker(self.packs)
        self.orchestrator = ImportOrchestrator(
            settings,
            upstream,
            downloader,
            object_store,
            manager,
            self.repository,
            work_dir,
            sleep=sleep,
            clock=self._clock,
        )
        self.scanner = ChangeScanner(upstream, self.repository, self.orchestrator, clock=self._clock)

    async def aclose(self) -> None:
        await self.upstream.aclose()
        await self.downloader.aclose()

    # ------------------------------------------------------------------
    # Imports and scans
    # ------------------------------------------------------------------
    async def import_sets(self, set_ids: Iterable[int]) -> int:
        return await self.orchestrator.import_sets(set_ids)

    async def import_from_dump(self, path: Path | None = None) -> BatchProgress:
        return await self.orchestrator.import_from_dump(path)

    async def import_from_recents(self) -> BatchProgress:
        return await self.orchestrator.import_from_recents()

    async def scan_for_changes(self, since: datetime | int | None = None) -> ScanReport:
        return await self.scanner.scan(since)

    async def scan_recent_changes(self) -> ScanReport:
        return await self.scanner.scan(self.scanner.recent_cutoff(self.settings.scan.recent_window_days))

    def has_completed_dump(self) -> bool:
        return self.repository.last_dump_import() is not None

    def dump_is_stale(self) -> bool:
        last = self.repository.last_dump_import()
        if last is None:
            return True
        return self._clock() - last > self.settings.dump.refresh_days * 86400

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    def search(self, query: str = "", sort: str = "auto", limit: int = 50, offset: int = 0) -> SearchPage:
        return self.catalog.search(query, sort=sort, limit=limit, offset=offset)

    def search_ids_only(self, query: str = "") -> list[int]:
        return self.catalog.search_ids(query)

    def search_aggregate_sizes(self, query: str = "") -> SizeTotals:
        return self.catalog.aggregate_sizes(query)

    # ------------------------------------------------------------------
    # Packs
    # ------------------------------------------------------------------
    def create_pack(
        self,
        name: str,
        kind: str,
        creator_id: int | None,
        ids: Iterable[int | str] | None = None,
        query: str | None = None,
    ) -> Pack:
        return self.packs.create_pack(name, kind, creator_id, ids=ids, query=query)

    def edit_pack_membership(self, pack_id: int, edit: Callable[[list[int]], Iterable[int | str]]) -> Pack:
        return self.packs.edit_pack_membership(pack_id, edit)

    def get_pack(self, pack_id: int) -> PackView | None:
        return self.packs.get_pack(pack_id)

    def add_to_pack(self, pack_id: int, ids: Iterable[int | str]) -> Pack:
        return self.packs.add_to_pack(pack_id, ids)

    def add_query_to_pack(self, pack_id: int, query: str) -> Pack:
        return self.packs.add_query_to_pack(pack_id, query)

    def remove_from_pack(self, pack_id: int, ids: Iterable[int | str]) -> Pack:
        return self.packs.remove_from_pack(pack_id, ids)

    def delete_pack(self, pack_id: int) -> bool:
        return self.packs.delete_pack(pack_id)

    def list_packs(self, creator_id: int | None = None) -> list[Pack]:
        return self.packs.list_packs(creator_id)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------
    def get_presigned_set_url(self, set_id: int, want_alt_media: bool = True) -> str | None:
        """Presigned GET URL for a set; falls back to the stripped variant when no alt exists."""

        record = self.repository.load_set(set_id)
        if record is None or record.stripped is None:
            return None
        variant = record.alt_media if want_alt_media and record.alt_media else record.stripped
        filename = sanitise_filename(f"{record.id} {record.artist} - {record.title}.osz")
        self.logger.debug("presigned_url_issued", set_id=set_id, key=variant.key)
        return self.object_store.presigned_url(
            self.settings.storage.bucket,
            variant.key,
            self.settings.storage.presign_ttl,
            filename=filename,
        )

    def get_presigned_item_url(self, item_id: int, want_alt_media: bool = True) -> str | None:
        set_id = self.repository.set_id_for_item(item_id)
        if set_id is None:
            return None
        return self.get_presigned_set_url(set_id, want_alt_media)


def build_api(
    settings: Settings,
    locator: ConfigLocator,
    transport: httpx.AsyncBaseTransport | None = None,
    object_store: ObjectStore | None = None,
    manager: SQLiteManager | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    clock: Callable[[], float] | None = None,
) -> CatalogApi:
    """Wire the facade from settings; tests inject a transport, a store and fake time."""

    manager = manager or SQLiteManager(settings.scan.search_tokenizer)
    conn = manager.connect(settings.resolved_database_path(locator.project_root))
    upstream = build_upstream_client(settings.upstream, transport=transport, sleep=sleep, clock=clock)
    downloader = ArchiveDownloader(
        settings.downloads,
        locator.scratch_dir,
        transport=transport,
        sleep=sleep,
    )
    return CatalogApi(
        settings,
        manager,
        conn,
        upstream,
        downloader,
        object_store or S3ObjectStore(settings.storage),
        locator.scratch_dir,
        sleep=sleep,
        clock=clock,
    )


__all__ = ["CatalogApi", "build_api", "sanitise_filename"]
