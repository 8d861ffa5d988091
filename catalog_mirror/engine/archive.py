"""Archive hashing, media stripping and archive synthesis."""

from __future__ import annotations

import hashlib
import shutil
import uuid
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import structlog

from ..errors import ArchiveCorruptionError

HASH_CHUNK_SIZE = 1024 * 1024
# encrypted members and unsupported compression methods surface as RuntimeError
STRIP_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    EOFError,
    RuntimeError,
    zlib.error,
    OSError,
)


@dataclass(slots=True)
class FileDigest:
    sha256: str
    size: int


def digest_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> FileDigest:
    """Stream a file through sha256 and count its bytes."""

    hasher = hashlib.sha256()
    size = 0
    with path.open("rb") as stream:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
            size += len(chunk)
    return FileDigest(sha256=hasher.hexdigest(), size=size)


def zip_directory(source_dir: Path, destination: Path) -> Path:
    """Zip every file below ``source_dir`` using paths relative to it."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                archive.write(path, arcname=path.relative_to(source_dir).as_posix())
    return destination


def zip_files(files: Iterable[Path], destination: Path, delete_sources: bool = True) -> Path:
    """Bundle loose files into one archive, optionally removing them afterwards."""

    collected = list(files)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for path in collected:
            archive.write(path, arcname=path.name)
    if delete_sources:
        for path in collected:
            path.unlink(missing_ok=True)
    return destination


def _safe_extract(archive: zipfile.ZipFile, target: Path) -> None:
    root = target.resolve()
    for member in archive.infolist():
        resolved = (root / member.filename).resolve()
        if root != resolved and root not in resolved.parents:
            raise ArchiveCorruptionError(f"Archive member escapes extraction dir: {member.filename}")
    archive.extractall(root)


@dataclass(slots=True)
class StripResult:
    """Outcome of removing large media from an archive."""

    removed: list[str]
    stripped_path: Path | None

    @property
    def changed(self) -> bool:
        return self.stripped_path is not None


class MediaStripper:
    """Remove large embedded media files and re-zip the remainder."""

    def __init__(
        self,
        extensions: Iterable[str],
        scratch_dir: Path,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.extensions = {ext.lower().lstrip(".") for ext in extensions}
        self.scratch_dir = scratch_dir
        self.logger = logger or structlog.get_logger("catalog_mirror.archive")

    def is_media(self, path: Path) -> bool:
        return path.suffix.lower().lstrip(".") in self.extensions

    def strip(self, archive_path: Path, destination: Path) -> StripResult:
        """Write a media-free copy of ``archive_path`` to ``destination`` if anything was removed.

        Raises ``ArchiveCorruptionError`` when the archive cannot be read or
        re-written; a partial ``destination`` is removed first.
        The scratch directory is always removed.
        """

        workdir = self.scratch_dir / f"strip-{uuid.uuid4().hex}"
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(archive_path) as archive:
                _safe_extract(archive, workdir)
            removed: list[str] = []
            for path in sorted(workdir.rglob("*")):
                if path.is_file() and self.is_media(path):
                    removed.append(path.relative_to(workdir).as_posix())
                    path.unlink()
            if not removed:
                return StripResult(removed=[], stripped_path=None)
            zip_directory(workdir, destination)
            self.logger.debug("media_stripped", archive=archive_path.name, removed=removed)
            return StripResult(removed=removed, stripped_path=destination)
        except STRIP_ERRORS as exc:
            destination.unlink(missing_ok=True)
            raise ArchiveCorruptionError(
                f"Cannot strip {archive_path.name}: {type(exc).__name__}: {exc}"
            ) from exc
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


__all__ = [
    "FileDigest",
    "MediaStripper",
    "StripResult",
    "digest_file",
    "zip_directory",
    "zip_files",
]
