"""Shared fixtures: isolated home directory, fake time, a fake upstream and storage stubs."""

from __future__ import annotations

import io
import re
import zipfile
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from catalog_mirror.api import CatalogApi, build_api
from catalog_mirror.config import (
    ConfigLocator,
    DownloadConfig,
    DumpConfig,
    RetryConfig,
    Settings,
    StorageConfig,
    UpstreamConfig,
)
from catalog_mirror.engine.mapping import SetRecord, VariantDescriptor, map_set
from catalog_mirror.engine.packs import PackStore
from catalog_mirror.engine.search import CatalogSearch
from catalog_mirror.errors import StorageWriteError
from catalog_mirror.infra import CatalogRepository, SQLiteManager


class FakeClock:
    """Callable clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StubObjectStore:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploads: list[tuple[str, str, str]] = []
        self.fail_keys: set[str] = set()

    async def upload(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        if key in self.fail_keys:
            raise StorageWriteError(f"refused {key}")
        self.objects[key] = path.read_bytes()
        self.uploads.append((bucket, key, content_type))

    def presigned_url(self, bucket: str, key: str, ttl: int, filename: str | None = None) -> str:
        return f"https://storage.test/{bucket}/{key}?ttl={ttl}&name={filename}"


def make_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def build_set_payload(set_id: int, item_count: int = 2, **overrides: Any) -> dict[str, Any]:
    items = [
        {
            "id": set_id * 10 + index,
            "beatmapset_id": set_id,
            "mode": "osu",
            "mode_int": 0,
            "status": "ranked",
            "version": f"Diff {index}",
            "total_length": 120 + index,
            "difficulty_rating": 4.25 + index,
            "bpm": 180,
            "cs": 4,
            "ar": 9,
            "accuracy": 8,
            "drain": 6,
            "count_circles": 300,
            "count_sliders": 200,
            "count_spinners": 1,
            "checksum": f"checksum-{set_id}-{index}",
        }
        for index in range(1, item_count + 1)
    ]
    payload: dict[str, Any] = {
        "id": set_id,
        "title": f"Song {set_id}",
        "title_unicode": f"Song {set_id}",
        "artist": "Camellia",
        "artist_unicode": "Camellia",
        "creator": "mapper",
        "user_id": 42,
        "source": "",
        "tags": "electronic hardcore",
        "language": {"id": 2, "name": "English"},
        "genre": {"id": 10, "name": "Electronic"},
        "status": "ranked",
        "submitted_date": "2023-03-01T00:00:00Z",
        "ranked_date": "2023-04-01T12:00:00Z",
        "availability": {"download_disabled": False, "more_information": None},
        "nsfw": False,
        "video": False,
        "beatmaps": items,
    }
    payload.update(overrides)
    return payload


class FakeUpstream:
    """``httpx.MockTransport`` handler serving the API, download and dump routes."""

    def __init__(self) -> None:
        self.sets: dict[int, dict[str, Any]] = {}
        self.archives: dict[int, bytes] = {}
        self.item_files: dict[int, bytes] = {}
        self.search_pages: list[list[int]] = []
        self.set_errors: dict[int, int] = {}
        self.dump: bytes | None = None
        self.requests: list[httpx.Request] = []

    def add_set(self, payload: dict[str, Any], archive: bytes | None = None) -> None:
        set_id = int(payload["id"])
        self.sets[set_id] = payload
        self.archives[set_id] = archive if archive is not None else make_zip(
            {f"{item['id']}.osu": b"osu file format v14" for item in payload["beatmaps"]}
        )

    def count(self, pattern: str) -> int:
        return sum(1 for request in self.requests if re.fullmatch(pattern, request.url.path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 86400})
        if path == "/api/v2/beatmapsets/search":
            cursor = request.url.params.get("cursor_string")
            index = int(cursor) if cursor else 0
            ids = self.search_pages[index] if index < len(self.search_pages) else []
            next_cursor = str(index + 1) if index + 1 < len(self.search_pages) else None
            return httpx.Response(
                200,
                json={"beatmapsets": [{"id": set_id} for set_id in ids], "cursor_string": next_cursor},
                headers={"x-ratelimit-remaining": "1100"},
            )
        match = re.fullmatch(r"/api/v2/beatmapsets/(\d+)", path)
        if match:
            set_id = int(match.group(1))
            if set_id in self.set_errors:
                return httpx.Response(self.set_errors[set_id], json={"error": "boom"})
            if set_id not in self.sets:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=self.sets[set_id], headers={"x-ratelimit-remaining": "1100"})
        match = re.fullmatch(r"/beatmapsets/(\d+)/download", path)
        if match and int(match.group(1)) in self.archives:
            return httpx.Response(200, content=self.archives[int(match.group(1))])
        match = re.fullmatch(r"/osu/(\d+)", path)
        if match and int(match.group(1)) in self.item_files:
            return httpx.Response(200, content=self.item_files[int(match.group(1))])
        if path == "/dumps/latest.tar.bz2" and self.dump is not None:
            return httpx.Response(200, content=self.dump)
        return httpx.Response(404, json={"error": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("CATALOG_MIRROR_HOME", str(tmp_path))
    for variable in (
        "CATALOG_MIRROR_CLIENT_ID",
        "CATALOG_MIRROR_CLIENT_SECRET",
        "CATALOG_MIRROR_S3_BUCKET",
        "CATALOG_MIRROR_DUMP_URL",
    ):
        monkeypatch.delenv(variable, raising=False)
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "data" / "catalog.db",
        upstream=UpstreamConfig(
            client_id="client",
            client_secret="secret",
            retry=RetryConfig(max_attempts=3, base_delay=0.0, jitter=0.0, cap=0.0),
        ),
        downloads=DownloadConfig(
            session_cookie="cookie",
            pacing_delay=0.0,
            rate_limit_backoff=0.0,
            max_attempts=2,
        ),
        storage=StorageConfig(bucket="test-bucket"),
        dump=DumpConfig(url="https://osu.ppy.sh/dumps/latest.tar.bz2"),
    )


@pytest.fixture
def manager() -> SQLiteManager:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def memory_repository(manager: SQLiteManager) -> CatalogRepository:
    conn = manager.connect(Path(":memory:"))
    return CatalogRepository(manager, conn)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def object_store() -> StubObjectStore:
    return StubObjectStore()


@pytest.fixture
def set_payload() -> Callable[..., dict[str, Any]]:
    return build_set_payload


@pytest.fixture
def make_api(
    settings: Settings,
    upstream: FakeUpstream,
    object_store: StubObjectStore,
    manager: SQLiteManager,
    clock: FakeClock,
) -> Callable[..., CatalogApi]:
    def _builder(**overrides: Any) -> CatalogApi:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return build_api(
            effective,
            ConfigLocator(),
            transport=upstream.transport(),
            object_store=object_store,
            manager=manager,
            sleep=clock.sleep,
            clock=clock,
        )

    return _builder


def store_set(
    repository: CatalogRepository,
    set_id: int,
    size: int = 1000,
    alt_size: int | None = None,
    **overrides: Any,
) -> SetRecord:
    """Persist a mapped payload with storage descriptors, bypassing the upstream."""

    record = map_set(build_set_payload(set_id, **overrides))
    record.stripped = VariantDescriptor(f"archives/v1/{set_id}.osz", size, f"sha-{set_id}")
    if alt_size is not None:
        record.alt_media = VariantDescriptor(f"archives/v1/{set_id}-alt.osz", alt_size, f"alt-sha-{set_id}")
    repository.persist_set(record, imported_at=1_700_000_000)
    return record


@pytest.fixture
def catalog(memory_repository: CatalogRepository) -> CatalogSearch:
    return CatalogSearch(memory_repository.conn, memory_repository)


@pytest.fixture
def pack_store(manager: SQLiteManager, memory_repository: CatalogRepository, catalog: CatalogSearch) -> PackStore:
    return PackStore(manager, memory_repository.conn, catalog, size_slice=2)


@pytest.fixture
def stored_set(memory_repository: CatalogRepository) -> Callable[..., SetRecord]:
    def _store(set_id: int, size: int = 1000, alt_size: int | None = None, **overrides: Any) -> SetRecord:
        return store_set(memory_repository, set_id, size=size, alt_size=alt_size, **overrides)

    return _store
