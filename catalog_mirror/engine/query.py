"""Filter-language tokenizer, parser and SQL compiler for catalog search.

A query string mixes ``field<op>value`` filters with free-text terms::

    stars>=5.5 mode=mania keys=4,7 year=2019-2021 "koral reef" camellia

Operators are ``=``, ``:``, ``<``, ``<=``, ``>``, ``>=``. Values may be a
quoted phrase, a single token, a comma list (OR) or a hyphen range. The
compiler emits a parameterised WHERE clause over ``items i`` joined to
``sets s`` (plus ``catalog_search`` for full-text and the pack tables for
``pack=``); user input only ever reaches SQL as bound parameters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator

from .mapping import MODE_ALIASES, Mode, normalise_status

OPERATORS = ("<=", ">=", "=", ":", "<", ">")
EQUALITY_OPS = ("=", ":")
NEVER_MATCH = "1 = 0"

ENUM_FIELDS = {"mode": "i.mode", "status": "i.status"}
DATE_FIELDS = {
    "date": "s.time_ranked",
    "ranked": "s.time_ranked",
    "year": "s.time_ranked",
    "month": "s.time_ranked",
    "day": "s.time_ranked",
    "submitted": "s.time_submitted",
}
# field -> (FTS column filter, stored column used for lexical comparison)
STRING_FIELDS = {
    "title": ("title title_unicode", "s.title"),
    "artist": ("artist artist_unicode", "s.artist"),
    "mapper": ("creator", "s.creator"),
    "creator": ("creator", "s.creator"),
    "version": ("version", "i.version"),
    "diff": ("version", "i.version"),
    "source": ("source", "s.source"),
    "tags": ("tags", "s.tags"),
}
NUMERIC_FIELDS = {
    "stars": "i.stars",
    "length": "i.length",
    "bpm": "i.bpm",
    "cs": "i.cs",
    "keys": "i.cs",
    "ar": "i.ar",
    "od": "i.od",
    "acc": "i.od",
    "accuracy": "i.od",
    "hp": "i.hp",
    "health": "i.hp",
    "circles": "i.count_circles",
    "notes": "i.count_circles",
    "hits": "i.count_circles",
    "fruits": "i.count_circles",
    "sliders": "i.count_sliders",
    "drumrolls": "i.count_sliders",
    "longnotes": "i.count_sliders",
    "holdnotes": "i.count_sliders",
    "holds": "i.count_sliders",
    "spinners": "i.count_spinners",
    "streams": "i.count_spinners",
    "swells": "i.count_spinners",
    "showers": "i.count_spinners",
    "bananas": "i.count_spinners",
}
EXACT_FIELDS = {"pack": "p.id"}

_NUMBER = r"\d+(?:\.\d+)?|\.\d+"
_NUMERIC_RANGE = re.compile(rf"^({_NUMBER})\s*-\s*({_NUMBER})$")
_NUMERIC_VALUE = re.compile(rf"^({_NUMBER})$")
_YEAR_RANGE = re.compile(r"^(\d{4})-(\d{4})$")
_DATE_VALUE = re.compile(r"^(\d{4})(?:-(\d{1,2})(?:-(\d{1,2}))?)?$")
_FIELD_NAME = re.compile(r"[A-Za-z0-9_]+")


def field_family(name: str) -> str | None:
    if name in ENUM_FIELDS:
        return "enum"
    if name in DATE_FIELDS:
        return "date"
    if name in STRING_FIELDS:
        return "string"
    if name in NUMERIC_FIELDS:
        return "numeric"
    if name in EXACT_FIELDS:
        return "exact"
    return None


def resolved_column(name: str) -> str:
    if name in STRING_FIELDS:
        return STRING_FIELDS[name][1]
    for table in (ENUM_FIELDS, DATE_FIELDS, NUMERIC_FIELDS, EXACT_FIELDS):
        if name in table:
            return table[name]
    raise KeyError(name)


# ----------------------------------------------------------------------
# Lexer
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Token:
    kind: str  # FIELD, OP, VALUE, TERM
    text: str
    quoted: bool = False
    raw: str = ""


def _read_quoted(source: str, start: int) -> tuple[str, int]:
    """Read a double-quoted phrase starting at ``source[start] == '"'``."""

    end = source.find('"', start + 1)
    if end == -1:
        return source[start + 1:], len(source)
    return source[start + 1:end], end + 1


def _read_word(source: str, start: int) -> int:
    index = start
    while index < len(source) and not source[index].isspace():
        index += 1
    return index


def tokenize(source: str) -> Iterator[Token]:
    """Split a query string into FIELD/OP/VALUE triples and TERM tokens."""

    index = 0
    length = len(source)
    while index < length:
        if source[index].isspace():
            index += 1
            continue
        if source[index] == '"':
            text, end = _read_quoted(source, index)
            yield Token("TERM", text, quoted=True, raw=source[index:end])
            index = end
            continue
        name_match = _FIELD_NAME.match(source, index)
        if name_match:
            cursor = name_match.end()
            while cursor < length and source[cursor] == " ":
                cursor += 1
            op = next((candidate for candidate in OPERATORS if source.startswith(candidate, cursor)), None)
            if op is not None:
                value_start = cursor + len(op)
                while value_start < length and source[value_start] == " ":
                    value_start += 1
                if value_start < length and source[value_start] == '"':
                    value, end = _read_quoted(source, value_start)
                    quoted = True
                else:
                    end = _read_word(source, value_start)
                    value, quoted = source[value_start:end], False
                raw = source[index:end]
                yield Token("FIELD", name_match.group(0).lower(), raw=raw)
                yield Token("OP", op, raw=raw)
                yield Token("VALUE", value, quoted=quoted, raw=raw)
                index = end
                continue
        end = _read_word(source, index)
        yield Token("TERM", source[index:end], raw=source[index:end])
        index = end


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Filter:
    field: str
    op: str
    value: str
    family: str
    column: str
    implied: bool = False

    @property
    def is_equality(self) -> bool:
        return self.op in EQUALITY_OPS


@dataclass(slots=True)
class ParsedQuery:
    filters: list[Filter] = field(default_factory=list)
    terms: list[str] = field(default_factory=list)


class QueryParser:
    """Recursive-descent parser over the token stream.

    ``query := (filter | term)*`` and ``filter := FIELD OP VALUE``. Filters on
    unknown fields fall back to free-text terms.
    """

    def __init__(self, source: str) -> None:
        self._tokens = list(tokenize(source))
        self._pos = 0

    def _peek(self) -> Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self, kind: str) -> Token:
        token = self._peek()
        if token is None or token.kind != kind:
            raise ValueError(f"Expected {kind} at token {self._pos}")
        self._pos += 1
        return token

    def parse(self) -> ParsedQuery:
        result = ParsedQuery()
        while self._peek() is not None:
            if self._peek().kind == "FIELD":
                self._parse_filter(result)
            else:
                self._parse_term(result)
        return result

    def _parse_term(self, result: ParsedQuery) -> None:
        token = self._take("TERM")
        text = token.text.strip()
        if text:
            result.terms.append(text)

    def _parse_filter(self, result: ParsedQuery) -> None:
        name = self._take("FIELD")
        op = self._take("OP")
        value = self._take("VALUE")
        family = field_family(name.text)
        if family is None:
            result.terms.append(name.raw)
            return
        result.filters.append(
            Filter(
                field=name.text,
                op=op.text,
                value=value.text.strip(),
                family=family,
                column=resolved_column(name.text),
            )
        )
        if name.text == "keys":
            result.filters.append(
                Filter(field="mode", op="=", value="mania", family="enum", column="i.mode", implied=True)
            )


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------
def widen_number(text: str) -> tuple[float, float]:
    """Widen a literal to the range it may have been rounded from.

    ``5`` -> ``[5.00, 5.99]``, ``5.5`` -> ``[5.50, 5.59]``; two or more
    decimals are taken exactly.
    """

    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {text!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Not a number: {text!r}")
    decimals = max(0, -value.as_tuple().exponent)
    if decimals >= 2:
        return float(value), float(value)
    upper = value + Decimal(1).scaleb(-decimals) - Decimal("0.01")
    return float(value), float(upper)


def date_range(text: str) -> tuple[int, int]:
    """Resolve ``YYYY``, ``YYYY-MM`` or ``YYYY-MM-DD`` to a half-open UTC epoch range."""

    match = _DATE_VALUE.match(text.strip())
    if not match:
        raise ValueError(f"Not a date: {text!r}")
    year = int(match.group(1))
    month = int(match.group(2)) if match.group(2) else None
    day = int(match.group(3)) if match.group(3) else None
    if month is None:
        start = datetime(year, 1, 1, tzinfo=timezone.utc)
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    elif day is None:
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year + (month == 12), month % 12 + 1, 1, tzinfo=timezone.utc)
    else:
        start = datetime(year, month, day, tzinfo=timezone.utc)
        return int(start.timestamp()), int(start.timestamp()) + 86400
    return int(start.timestamp()), int(end.timestamp())


def quote_phrase(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# ----------------------------------------------------------------------
# Compiler
# ----------------------------------------------------------------------
@dataclass(slots=True)
class CompiledQuery:
    filters: list[Filter]
    text_query: str
    where: str
    params: list[Any]
    join_search: bool = False
    join_packs: bool = False
    match_expression: str = ""

    @property
    def from_clause(self) -> str:
        parts = ["FROM items i", "JOIN sets s ON s.id = i.set_id"]
        if self.join_search:
            parts.append("JOIN catalog_search ON catalog_search.rowid = i.id")
        if self.join_packs:
            parts.append("JOIN pack_content_members pcm ON pcm.set_id = s.id")
            parts.append("JOIN packs p ON p.content_sha256 = pcm.sha256")
        return "\n".join(parts)

    @property
    def where_clause(self) -> str:
        return f"WHERE {self.where}" if self.where else ""


class QueryCompiler:
    """Compile filter-language strings into parameterised SQL fragments."""

    def parse(self, source: str) -> ParsedQuery:
        return QueryParser(source or "").parse()

    def compile(self, source: str) -> CompiledQuery:
        parsed = self.parse(source)
        active = self._dedupe_equalities(parsed.filters)
        clauses: list[str] = []
        params: list[Any] = []
        match_parts: list[str] = []
        join_packs = False

        for item in active:
            if item.family == "string" and item.is_equality:
                columns = STRING_FIELDS[item.field][0]
                values = _split_list(item.value)
                if not values:
                    clauses.append(NEVER_MATCH)
                    continue
                filtered = [f"{{{columns}}} : {quote_phrase(value)}" for value in values]
                match_parts.append(filtered[0] if len(filtered) == 1 else "(" + " OR ".join(filtered) + ")")
                continue
            if item.family == "exact":
                join_packs = True
            try:
                clause, values = self._compile_filter(item)
            except ValueError:
                clause, values = NEVER_MATCH, []
            clauses.append(clause)
            params.extend(values)

        text_query = " ".join(quote_phrase(term) for term in parsed.terms if term.strip())
        if text_query:
            match_parts.append(text_query)
        match_expression = " AND ".join(match_parts)
        join_search = bool(match_expression)
        if join_search:
            clauses.append("catalog_search MATCH ?")
            params.append(match_expression)

        return CompiledQuery(
            filters=parsed.filters,
            text_query=text_query,
            where=" AND ".join(clauses),
            params=params,
            join_search=join_search,
            join_packs=join_packs,
            match_expression=match_expression,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _dedupe_equalities(filters: list[Filter]) -> list[Filter]:
        seen: set[str] = set()
        kept: list[Filter] = []
        for item in filters:
            if item.is_equality:
                if item.column in seen:
                    continue
                seen.add(item.column)
            kept.append(item)
        return kept

    def _compile_filter(self, item: Filter) -> tuple[str, list[Any]]:
        if item.family == "enum":
            return self._compile_enum(item)
        if item.family == "date":
            return self._compile_date(item)
        if item.family == "string":
            return f"{item.column} {item.op} ?", [item.value]
        if item.family == "numeric":
            return self._compile_numeric(item)
        return self._compile_exact(item)

    @staticmethod
    def _enum_code(item: Filter, value: str) -> int:
        if item.field == "mode":
            key = value.lower()
            if key not in MODE_ALIASES:
                raise ValueError(f"Unknown mode {value!r}")
            return int(Mode(MODE_ALIASES[key]))
        return normalise_status(value)

    def _compile_enum(self, item: Filter) -> tuple[str, list[Any]]:
        values = _split_list(item.value)
        if not values:
            raise ValueError("empty enum value")
        codes = [self._enum_code(item, value) for value in values]
        if item.is_equality:
            return "(" + " OR ".join(f"{item.column} = ?" for _ in codes) + ")", codes
        if len(codes) != 1:
            raise ValueError("enum comparison takes a single value")
        return f"{item.column} {item.op} ?", codes

    def _compile_date(self, item: Filter) -> tuple[str, list[Any]]:
        value = item.value
        year_range = _YEAR_RANGE.match(value)
        if year_range:
            first = date_range(year_range.group(1))
            second = date_range(year_range.group(2))
            bounds = [(min(first[0], second[0]), max(first[1], second[1]))]
        else:
            bounds = [date_range(part) for part in _split_list(value)]
        if not bounds:
            raise ValueError("empty date value")
        column = item.column
        if item.is_equality:
            clause = " OR ".join(f"({column} >= ? AND {column} < ?)" for _ in bounds)
            params = [edge for bound in bounds for edge in bound]
            return f"({clause})", params
        if len(bounds) != 1:
            raise ValueError("date comparison takes a single value or year range")
        start, end = bounds[0]
        if item.op == "<":
            return f"{column} < ?", [start]
        if item.op == "<=":
            return f"{column} < ?", [end]
        if item.op == ">":
            return f"{column} >= ?", [end]
        return f"{column} >= ?", [start]

    def _compile_numeric(self, item: Filter) -> tuple[str, list[Any]]:
        column = item.column
        ranged = _NUMERIC_RANGE.match(item.value)
        if ranged:
            low, high = sorted((float(ranged.group(1)), float(ranged.group(2))))
            if item.op in ("<", "<="):
                return f"{column} {item.op} ?", [low]
            if item.op in (">", ">="):
                return f"{column} {item.op} ?", [high]
            return f"({column} BETWEEN ? AND ?)", [low, high]
        values = _split_list(item.value)
        if not values or not all(_NUMERIC_VALUE.match(value) for value in values):
            raise ValueError(f"Not numeric: {item.value!r}")
        if item.is_equality:
            bounds = [widen_number(value) for value in values]
            clause = " OR ".join(f"{column} BETWEEN ? AND ?" for _ in bounds)
            return f"({clause})", [edge for bound in bounds for edge in bound]
        if len(values) != 1:
            raise ValueError("numeric comparison takes a single value")
        return f"{column} {item.op} ?", [float(values[0])]

    def _compile_exact(self, item: Filter) -> tuple[str, list[Any]]:
        if not item.is_equality:
            raise ValueError("pack filter supports equality only")
        values = [int(value) for value in _split_list(item.value)]
        if not values:
            raise ValueError("empty pack value")
        return "(" + " OR ".join(f"{item.column} = ?" for _ in values) + ")", values


# ----------------------------------------------------------------------
# Sorting
# ----------------------------------------------------------------------
SORT_KEYS: dict[str, str] = {
    "ranked_desc": "MAX(time_ranked) DESC",
    "ranked_asc": "MIN(time_ranked) ASC",
    "submitted_desc": "MAX(time_submitted) DESC",
    "submitted_asc": "MIN(time_submitted) ASC",
    "stars_desc": "MAX(stars) DESC",
    "stars_asc": "MIN(stars) ASC",
    "bpm_desc": "MAX(bpm) DESC",
    "bpm_asc": "MIN(bpm) ASC",
    "length_desc": "MAX(length) DESC",
    "length_asc": "MIN(length) ASC",
    "title_desc": "MAX(title) COLLATE NOCASE DESC",
    "title_asc": "MIN(title) COLLATE NOCASE ASC",
    "artist_desc": "MAX(artist) COLLATE NOCASE DESC",
    "artist_asc": "MIN(artist) COLLATE NOCASE ASC",
}
SORT_CHOICES = ("auto", *SORT_KEYS)


def order_by(sort: str, compiled: CompiledQuery) -> str:
    """Return the ORDER BY expression for grouped set results."""

    if sort == "auto":
        if compiled.join_search:
            return "MIN(match_rank) ASC, MAX(time_ranked) DESC, set_id DESC"
        return "MAX(time_ranked) DESC, set_id DESC"
    if sort not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort!r}")
    return f"{SORT_KEYS[sort]}, set_id DESC"


__all__ = [
    "CompiledQuery",
    "DATE_FIELDS",
    "ENUM_FIELDS",
    "EXACT_FIELDS",
    "Filter",
    "NEVER_MATCH",
    "NUMERIC_FIELDS",
    "ParsedQuery",
    "QueryCompiler",
    "QueryParser",
    "SORT_CHOICES",
    "SORT_KEYS",
    "STRING_FIELDS",
    "Token",
    "date_range",
    "order_by",
    "tokenize",
    "widen_number",
]
