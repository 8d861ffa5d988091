"""Streaming parser for SQL-dump style table exports."""

from __future__ import annotations

import bz2
import codecs
import re
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Iterator

import structlog

from ..errors import ParseError

Row = dict[str, Any] | list[Any]

_SKIPPED_PREFIXES = (
    "CREATE TABLE",
    "PRIMARY KEY",
    "KEY",
    "UNIQUE KEY",
    "CONSTRAINT",
    ")",
    "/*",
)
_COLUMN_PATTERN = re.compile(r"^[`'\"]([^`'\"]+)[`'\"]")
_ANY_TABLE_HEADER = re.compile(r"CREATE TABLE\s+", re.IGNORECASE)
_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

IDLE_BUFFER_LIMIT = 5000
IDLE_BUFFER_TAIL = 200


def clean_value(raw: str, quoted: bool = False) -> Any:
    """Convert one raw SQL literal into a Python value."""

    value = raw.strip()
    if quoted:
        return value
    if value == "NULL":
        return None
    if _NUMBER_PATTERN.match(value):
        if re.fullmatch(r"[+-]?\d+", value):
            return int(value)
        return float(value)
    return value


def split_row(raw: str) -> list[Any]:
    """Split the inside of ``( ... )`` on top-level commas, honouring quotes and escapes."""

    values: list[Any] = []
    current: list[str] = []
    in_quote = False
    escaped = False
    quoted = False
    for char in raw:
        if escaped:
            current.append(char)
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == "'":
            in_quote = not in_quote
            quoted = True
            continue
        if char == "," and not in_quote:
            values.append(clean_value("".join(current), quoted))
            current = []
            quoted = False
            continue
        current.append(char)
    values.append(clean_value("".join(current), quoted))
    return values


def extract_columns(statement: str) -> list[str]:
    """Return column names of a ``CREATE TABLE`` statement in declaration order."""

    columns: list[str] = []
    for line in statement.split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(_SKIPPED_PREFIXES):
            continue
        match = _COLUMN_PATTERN.match(trimmed)
        if match:
            columns.append(match.group(1))
    return columns


class DumpStreamParser:
    """Incremental character-level parser yielding rows of one table.

    Feed decoded text chunks with :meth:`feed`; every call yields the rows
    completed by that chunk. Values whose count differs from the discovered
    column count are yielded as a plain list so callers can reject them.
    The parser is forward-only: once :attr:`finished` is set, further input
    is ignored.
    """

    def __init__(self, table: str) -> None:
        self.table = table
        self.columns: list[str] | None = None
        self.finished = False
        self.rows_emitted = 0
        self._header = re.compile(
            rf"CREATE TABLE\s+[`'\"]?{re.escape(table)}[`'\"]?\s*\(", re.IGNORECASE
        )
        self._insert_marker = f"INSERT INTO `{table}` VALUES"
        self._buffer = ""
        self._reading_schema = False
        self._in_insert = False
        self._in_quote = False
        self._escaped = False
        self._in_row = False
        self._row: list[str] = []

    @property
    def schema_found(self) -> bool:
        return self.columns is not None

    def feed(self, text: str) -> Iterator[Row]:
        if self.finished or not text:
            return
        self._buffer += text
        if self.columns is None:
            self._discover_schema()
        while not self.finished:
            if not self._in_insert and not self._find_insert():
                return
            yield from self._scan_rows()
            if self._in_insert:
                # Buffer exhausted in the middle of a statement
                return

    def parse(self, chunks: Iterable[str | bytes], encoding: str = "utf-8") -> Iterator[Row]:
        """Consume an iterable of chunks and yield rows until the table block ends."""

        decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        for chunk in chunks:
            text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            yield from self.feed(text)
            if self.finished:
                return
        tail = decoder.decode(b"", final=True)
        if tail:
            yield from self.feed(tail)

    # ------------------------------------------------------------------
    def _discover_schema(self) -> None:
        if not self._reading_schema:
            match = self._header.search(self._buffer)
            if match:
                self._reading_schema = True
                self._buffer = self._buffer[match.start():]
        if self._reading_schema:
            end = self._buffer.find(";")
            if end != -1:
                self.columns = extract_columns(self._buffer[:end])
                self._reading_schema = False
                self._buffer = self._buffer[end + 1:]

    def _find_insert(self) -> bool:
        idx = self._buffer.find(self._insert_marker)
        if idx != -1:
            if self.rows_emitted and _ANY_TABLE_HEADER.search(self._buffer, 0, idx):
                # Another table's definition started before this insert
                self.finished = True
                return False
            self._in_insert = True
            self._buffer = self._buffer[idx + len(self._insert_marker):]
            return True
        if self.rows_emitted and _ANY_TABLE_HEADER.search(self._buffer):
            self.finished = True
            return False
        if not self._reading_schema and len(self._buffer) > IDLE_BUFFER_LIMIT:
            self._buffer = self._buffer[-IDLE_BUFFER_TAIL:]
        return False

    def _scan_rows(self) -> Iterator[Row]:
        buffer = self._buffer
        index = 0
        length = len(buffer)
        while index < length:
            char = buffer[index]
            index += 1
            if self._escaped:
                self._escaped = False
                if self._in_row:
                    self._row.append(char)
                continue
            if char == "\\":
                self._escaped = True
                if self._in_row:
                    self._row.append(char)
                continue
            if char == "'":
                self._in_quote = not self._in_quote
                if self._in_row:
                    self._row.append(char)
                continue
            if self._in_quote:
                if self._in_row:
                    self._row.append(char)
                continue
            if not self._in_row and char == "(":
                self._in_row = True
                self._row = []
                continue
            if self._in_row and char == ")":
                self._in_row = False
                yield self._build_row("".join(self._row))
                self._row = []
                continue
            if char == ";":
                self._in_insert = False
                self._buffer = buffer[index:]
                return
            if self._in_row:
                self._row.append(char)
        self._buffer = ""

    def _build_row(self, raw: str) -> Row:
        values = split_row(raw)
        self.rows_emitted += 1
        if self.columns is not None and len(values) == len(self.columns):
            return dict(zip(self.columns, values))
        return values


# ----------------------------------------------------------------------
# Dump archive access
# ----------------------------------------------------------------------
def _iter_stream(stream: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


@contextmanager
def open_dump_table(path: Path, table: str) -> Iterator[BinaryIO]:
    """Open the ``<table>.sql`` stream inside a dump archive (or a bare ``.sql`` file)."""

    name = path.name.lower()
    if name.endswith((".tar.bz2", ".tbz2", ".tar.gz", ".tgz", ".tar")):
        with tarfile.open(path, mode="r:*") as archive:
            member = next(
                (m for m in archive.getmembers() if m.isfile() and Path(m.name).name == f"{table}.sql"),
                None,
            )
            if member is None:
                raise ParseError(f"Dump archive {path.name} has no member {table}.sql")
            stream = archive.extractfile(member)
            if stream is None:
                raise ParseError(f"Dump member {member.name} is not readable")
            with stream:
                yield stream
    elif name.endswith(".bz2"):
        with bz2.open(path, "rb") as stream:
            yield stream
    else:
        with path.open("rb") as stream:
            yield stream


def iter_dump_rows(path: Path, table: str, chunk_size: int = 1024 * 256) -> Iterator[Row]:
    """Yield rows of ``table`` from a dump file, raising ``ParseError`` if no schema was seen."""

    logger = structlog.get_logger("catalog_mirror.dump_parser")
    parser = DumpStreamParser(table)
    with open_dump_table(path, table) as stream:
        yield from parser.parse(_iter_stream(stream, chunk_size))
    if not parser.schema_found:
        raise ParseError(f"Schema for table {table!r} not found in {path.name}")
    logger.info("dump_table_parsed", table=table, rows=parser.rows_emitted, path=str(path))


__all__ = [
    "DumpStreamParser",
    "Row",
    "clean_value",
    "extract_columns",
    "iter_dump_rows",
    "open_dump_table",
    "split_row",
]
