"""Import orchestrator wiring together fetch, download, media strip, upload and persist."""

from __future__ import annotations

import asyncio
import time
import weakref
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import structlog

from .config import Settings, StorageConfig
from .engine.archive import MediaStripper, digest_file
from .engine.downloader import ArchiveDownloader
from .engine.dump_parser import iter_dump_rows
from .engine.mapping import SetRecord, VariantDescriptor, map_set
from .engine.upstream import UpstreamClient
from .errors import ArchiveCorruptionError, ParseError
from .infra import CatalogRepository, ObjectStore, SQLiteManager
from .logging_conf import configure_logging

Sleeper = Callable[[float], Awaitable[None]]


class ImportStage(str, Enum):
    FETCHING = "fetching"
    DOWNLOADING = "downloading"
    MEDIA_PROCESSING = "media_processing"
    UPLOADING = "uploading"
    PERSISTING = "persisting"


def storage_key(config: StorageConfig, set_id: int, alt_media: bool, download_disabled: bool) -> str:
    """Deterministic, versioned object key for one archive variant."""

    suffix = "-alt" if alt_media else ""
    if download_disabled:
        suffix += "-nodl"
    return f"{config.key_prefix.strip('/')}/v{config.key_version}/{set_id}{suffix}.osz"


@dataclass(slots=True)
class BatchProgress:
    """Attempted/succeeded/failed counters with a rolling throughput window."""

    label: str
    total: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[int] = field(default_factory=list)
    started: float = field(default_factory=time.time)
    _window: deque = field(default_factory=lambda: deque(maxlen=25), repr=False)

    def record(self, set_id: int, ok: bool, now: float) -> None:
        self.attempted += 1
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.failed_ids.append(set_id)
        self._window.append(now)

    def per_minute(self) -> float:
        if len(self._window) < 2:
            return 0.0
        span = self._window[-1] - self._window[0]
        return 0.0 if span <= 0 else (len(self._window) - 1) * 60.0 / span

    def eta_seconds(self) -> float | None:
        rate = self.per_minute()
        if rate <= 0:
            return None
        return (self.total - self.attempted) * 60.0 / rate

    @property
    def complete_success(self) -> bool:
        return self.failed == 0

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class ImportOrchestrator:
    """Drive the per-set import pipeline and batch bookkeeping."""

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamClient,
        downloader: ArchiveDownloader,
        object_store: ObjectStore,
        manager: SQLiteManager,
        repository: CatalogRepository,
        work_dir: Path,
        sleep: Sleeper | None = None,
        clock: Callable[[], float] | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.settings = settings
        self.upstream = upstream
        self.downloader = downloader
        self.object_store = object_store
        self.manager = manager
        self.repository = repository
        self.work_dir = work_dir
        self.stripper = MediaStripper(settings.downloads.media_extensions, work_dir)
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time
        self.logger = logger or configure_logging().bind(component="orchestrator")
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, set_id: int) -> asyncio.Lock:
        lock = self._locks.get(set_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[set_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Single set
    # ------------------------------------------------------------------
    async def import_set(self, set_id: int, payload: dict | None = None) -> SetRecord:
        """Run the full pipeline for one set; raises on unrecoverable errors."""

        lock = self._lock_for(set_id)
        async with lock:
            return await self._import_locked(set_id, payload)

    async def _import_locked(self, set_id: int, payload: dict | None) -> SetRecord:
        log = self.logger.bind(set_id=set_id)
        stage = ImportStage.FETCHING
        temp_files: list[Path] = []
        try:
            if payload is None:
                payload = await self.upstream.get_set(set_id)
            record = map_set(payload)

            stage = ImportStage.DOWNLOADING
            if record.is_download_disabled:
                archive = await self.downloader.download_item_files(
                    set_id, [item.id for item in record.items]
                )
            else:
                archive = await self.downloader.download_archive(set_id)
            temp_files.append(archive)

            stripped_path, alt_path = archive, None
            if record.has_video and not record.is_download_disabled:
                stage = ImportStage.MEDIA_PROCESSING
                destination = self.work_dir / f"{archive.stem}-stripped.osz"
                try:
                    result = await asyncio.to_thread(self.stripper.strip, archive, destination)
                except ArchiveCorruptionError as exc:
                    log.warning(
                        "media_strip_failed",
                        error=str(exc),
                        error_type=type(exc.__cause__ or exc).__name__,
                    )
                else:
                    if result.changed:
                        temp_files.append(destination)
                        stripped_path, alt_path = destination, archive
                        log.debug("media_removed", files=result.removed)

            stage = ImportStage.UPLOADING
            record.stripped = await self._upload_variant(record, stripped_path, alt_media=False)
            record.alt_media = (
                await self._upload_variant(record, alt_path, alt_media=True) if alt_path else None
            )

            stage = ImportStage.PERSISTING
            self.repository.persist_set(record, imported_at=int(self._clock()))
            log.info(
                "set_imported",
                items=len(record.items),
                stripped_size=record.stripped.size,
                alt_size=record.alt_media.size if record.alt_media else None,
            )
            return record
        except Exception:
            log.error("set_import_stage_failed", stage=stage.value)
            raise
        finally:
            for path in temp_files:
                path.unlink(missing_ok=True)

    async def _upload_variant(self, record: SetRecord, path: Path, alt_media: bool) -> VariantDescriptor:
        digest = await asyncio.to_thread(digest_file, path)
        key = storage_key(self.settings.storage, record.id, alt_media, record.is_download_disabled)
        await self.object_store.upload(
            self.settings.storage.bucket, key, path, self.settings.storage.content_type
        )
        return VariantDescriptor(key=key, size=digest.size, sha256=digest.sha256)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    async def run_batch(self, set_ids: Iterable[int], label: str = "import") -> BatchProgress:
        """Import sets one at a time; per-set failures are logged and counted."""

        ids = list(dict.fromkeys(int(set_id) for set_id in set_ids))
        progress = BatchProgress(label=label, total=len(ids), started=self._clock())
        log_every = max(1, self.settings.scan.progress_log_every)
        self.logger.info("batch_started", batch=label, total=progress.total)
        for index, set_id in enumerate(ids):
            ok = True
            try:
                await self.import_set(set_id)
            except Exception as exc:  # noqa: BLE001
                ok = False
                self.logger.error(
                    "set_import_failed",
                    batch=label,
                    set_id=set_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            progress.record(set_id, ok, self._clock())
            if progress.attempted % log_every == 0 or progress.attempted == progress.total:
                eta = progress.eta_seconds()
                self.logger.info(
                    "batch_progress",
                    batch=label,
                    per_minute=round(progress.per_minute(), 2),
                    eta_seconds=None if eta is None else round(eta),
                    **progress.summary(),
                )
            if index < len(ids) - 1 and self.settings.downloads.pacing_delay > 0:
                await self._sleep(self.settings.downloads.pacing_delay)
        self.logger.info("batch_finished", batch=label, **progress.summary())
        return progress

    async def import_sets(self, set_ids: Iterable[int]) -> int:
        progress = await self.run_batch(set_ids, label="import")
        return progress.succeeded

    # ------------------------------------------------------------------
    # Dump import
    # ------------------------------------------------------------------
    async def fetch_dump(self) -> Path:
        url = self.settings.dump.url
        if not url:
            raise ParseError("No dump URL configured")
        name = url.rstrip("/").rsplit("/", 1)[-1] or "dump.tar.bz2"
        destination = self.work_dir / name
        self.logger.info("dump_download_started", url=url)
        return await self.downloader.download_url(url, destination)

    def collect_dump_ids(self, path: Path) -> list[int]:
        """Read set ids with an accepted status from the dump's set table."""

        dump = self.settings.dump
        accepted = set(dump.statuses)
        ids: list[int] = []
        rejected = 0
        for row in iter_dump_rows(path, dump.table, dump.chunk_size):
            if not isinstance(row, dict):
                rejected += 1
                continue
            if dump.id_column not in row:
                raise ParseError(f"Dump table {dump.table} has no column {dump.id_column!r}")
            if dump.status_column in row and row[dump.status_column] not in accepted:
                continue
            ids.append(int(row[dump.id_column]))
        if rejected:
            self.logger.warning("dump_rows_rejected", table=dump.table, rejected=rejected)
        return ids

    async def import_from_dump(self, path: Path | None = None, only_missing: bool = True) -> BatchProgress:
        """Import every accepted set listed in the dump; advance the watermark only on zero failures."""

        downloaded = None
        if path is None:
            downloaded = path = await self.fetch_dump()
        try:
            ids = await asyncio.to_thread(self.collect_dump_ids, path)
        finally:
            if downloaded is not None:
                downloaded.unlink(missing_ok=True)
        if only_missing:
            known = self.repository.known_set_ids(ids)
            ids = [set_id for set_id in ids if set_id not in known]
        self.logger.info("dump_ids_collected", pending=len(ids))
        progress = await self.run_batch(ids, label="dump")
        if progress.complete_success:
            self.repository.mark_dump_imported(int(self._clock()))
            self.manager.optimize_search_index(self.repository.conn)
            self.logger.info("dump_import_completed", imported=progress.succeeded)
        else:
            self.logger.warning(
                "dump_import_incomplete",
                failed=progress.failed,
                failed_ids=progress.failed_ids[:50],
            )
        return progress

    # ------------------------------------------------------------------
    # Recents
    # ------------------------------------------------------------------
    async def discover_recent_ids(self) -> list[int]:
        """Page newest-first until enough consecutive pages hold only known sets."""

        limit = max(1, self.settings.scan.recents_max_seen_pages)
        cursor: str | None = None
        found: list[int] = []
        seen_streak = 0
        while True:
            page = await self.upstream.search_sets(cursor_string=cursor)
            page_ids = [int(entry["id"]) for entry in page.get("beatmapsets") or []]
            known = self.repository.known_set_ids(page_ids)
            fresh = [set_id for set_id in page_ids if set_id not in known and set_id not in found]
            if fresh:
                found.extend(fresh)
                seen_streak = 0
            else:
                seen_streak += 1
                if seen_streak >= limit:
                    break
            cursor = page.get("cursor_string")
            if not cursor:
                break
        return found

    async def import_from_recents(self) -> BatchProgress:
        ids = await self.discover_recent_ids()
        if not ids:
            self.logger.debug("recents_up_to_date")
        return await self.run_batch(ids, label="recents")


__all__ = ["BatchProgress", "ImportOrchestrator", "ImportStage", "storage_key"]
