"""Detect upstream drift of stored sets and re-import what changed."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from .engine.mapping import changed_fields, map_set
from .engine.upstream import UpstreamClient
from .infra import CatalogRepository
from .logging_conf import configure_logging
from .orchestrator import ImportOrchestrator


@dataclass(slots=True)
class ScanReport:
    processed: int = 0
    changed: int = 0
    missing: int = 0
    failed: int = 0
    changed_ids: list[int] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "changed": self.changed,
            "missing": self.missing,
            "failed": self.failed,
        }


def _as_epoch(since: datetime | int | float | None) -> int:
    if since is None:
        return 0
    if isinstance(since, datetime):
        return int(since.timestamp())
    return int(since)


class ChangeScanner:
    """Compare stored sets ranked after a cutoff against the upstream and re-import drifted ones."""

    def __init__(
        self,
        upstream: UpstreamClient,
        repository: CatalogRepository,
        orchestrator: ImportOrchestrator,
        clock: Callable[[], float] | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.upstream = upstream
        self.repository = repository
        self.orchestrator = orchestrator
        self._clock = clock or time.time
        self.logger = logger or configure_logging().bind(component="scanner")

    def recent_cutoff(self, days: int) -> int:
        return int(self._clock()) - days * 86400

    async def scan(self, since: datetime | int | float | None = None) -> ScanReport:
        cutoff = _as_epoch(since)
        set_ids = self.repository.set_ids_ranked_after(cutoff)
        report = ScanReport()
        self.logger.info("scan_started", cutoff=cutoff, candidates=len(set_ids))
        for set_id in set_ids:
            report.processed += 1
            try:
                payload = await self.upstream.safe_get_set(set_id)
                if payload is None:
                    report.missing += 1
                    continue
                stored = self.repository.load_set(set_id)
                fresh = map_set(payload)
                diffs = changed_fields(stored, fresh) if stored is not None else ["missing"]
                if not diffs:
                    continue
                self.logger.info("set_changed", set_id=set_id, fields=diffs)
                await self.orchestrator.import_set(set_id, payload=payload)
                report.changed += 1
                report.changed_ids.append(set_id)
            except Exception as exc:  # noqa: BLE001
                report.failed += 1
                self.logger.error(
                    "scan_set_failed",
                    set_id=set_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        self.logger.info("scan_finished", cutoff=cutoff, **report.summary())
        return report


__all__ = ["ChangeScanner", "ScanReport"]
