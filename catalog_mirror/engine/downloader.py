"""Archive download from the upstream's download endpoints."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Iterable

import httpx
import structlog

from ..config import DownloadConfig
from .archive import zip_files
from .governor import RetryPolicy, Sleeper, retry
from .upstream import raise_for_upstream_status

STREAM_CHUNK_SIZE = 1024 * 256


class ArchiveDownloader:
    """Fetch set archives, or rebuild them from raw item files when downloads are disabled.

    Download endpoints are rate-limited separately from the API, so 429s
    here wait ``rate_limit_backoff`` seconds rather than using the API backoff.
    """

    def __init__(
        self,
        config: DownloadConfig,
        work_dir: Path,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.work_dir = work_dir
        self._client = client or httpx.AsyncClient(
            follow_redirects=True, timeout=config.timeout, transport=transport
        )
        self._owns_client = client is None
        self._sleep = sleep or asyncio.sleep
        self.logger = logger or structlog.get_logger("catalog_mirror.downloader")
        self.policy = RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay=config.rate_limit_backoff,
            multiplier=1.0,
            jitter=0.0,
            cap=config.rate_limit_backoff,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/octet-stream, */*"}
        if self.config.session_cookie:
            headers["Cookie"] = f"{self.config.cookie_name}={self.config.session_cookie}"
        return headers

    async def _stream_to(self, url: str, destination: Path) -> Path:
        async def _attempt() -> Path:
            async with self._client.stream(
                "GET", url, headers=self._headers(), timeout=self.config.timeout
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise_for_upstream_status(response, url)
                with destination.open("wb") as handle:
                    async for chunk in response.aiter_bytes(STREAM_CHUNK_SIZE):
                        handle.write(chunk)
            return destination

        try:
            return await retry(
                _attempt,
                self.policy,
                sleep=self._sleep,
                logger=self.logger,
                label=url,
            )
        except Exception:
            destination.unlink(missing_ok=True)
            raise

    async def download_url(self, url: str, destination: Path) -> Path:
        """Stream an arbitrary URL (e.g. the database dump) to ``destination``."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        return await self._stream_to(url, destination)

    async def download_archive(self, set_id: int) -> Path:
        """Stream the full archive of ``set_id`` to a temp file and return its path."""

        self.work_dir.mkdir(parents=True, exist_ok=True)
        destination = self.work_dir / f"{set_id}-{uuid.uuid4().hex[:8]}.osz"
        url = self.config.archive_url_template.format(set_id=set_id)
        path = await self._stream_to(url, destination)
        self.logger.debug("archive_downloaded", set_id=set_id, size=path.stat().st_size)
        return path

    async def download_item_files(self, set_id: int, item_ids: Iterable[int]) -> Path:
        """Fetch each item's raw file and zip them into a synthesized archive."""

        self.work_dir.mkdir(parents=True, exist_ok=True)
        loose_dir = self.work_dir / f"{set_id}-items-{uuid.uuid4().hex[:8]}"
        loose_dir.mkdir(parents=True, exist_ok=True)
        collected: list[Path] = []
        try:
            for item_id in item_ids:
                url = self.config.item_url_template.format(item_id=item_id)
                target = loose_dir / f"{item_id}{self.config.item_file_suffix}"
                collected.append(await self._stream_to(url, target))
            destination = self.work_dir / f"{set_id}-{uuid.uuid4().hex[:8]}.osz"
            zip_files(collected, destination, delete_sources=True)
        finally:
            for path in loose_dir.glob("*"):
                path.unlink(missing_ok=True)
            loose_dir.rmdir()
        self.logger.debug("archive_synthesized", set_id=set_id, files=len(collected))
        return destination


__all__ = ["ArchiveDownloader"]
