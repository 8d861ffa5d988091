"""Explicit mapping from upstream payloads to internal catalog records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any


class SetStatus(IntEnum):
    GRAVEYARD = -2
    WIP = -1
    PENDING = 0
    RANKED = 1
    APPROVED = 2
    QUALIFIED = 3
    LOVED = 4


class Mode(IntEnum):
    OSU = 0
    TAIKO = 1
    FRUITS = 2
    MANIA = 3


STATUS_ALIASES: dict[str, int] = {status.name.lower(): int(status) for status in SetStatus}
STATUS_ALIASES.update({str(int(status)): int(status) for status in SetStatus})

MODE_ALIASES: dict[str, int] = {}
for _code, _aliases in (
    (Mode.OSU, ("s", "o", "std", "osu", "standard", "0")),
    (Mode.TAIKO, ("t", "drums", "taiko", "1")),
    (Mode.FRUITS, ("c", "catch", "ctb", "fruits", "2")),
    (Mode.MANIA, ("m", "keys", "mania", "3")),
):
    for _alias in _aliases:
        MODE_ALIASES[_alias] = int(_code)


def normalise_status(value: Any) -> int:
    """Accept upstream status names or integer codes."""

    if isinstance(value, bool):
        raise ValueError(f"Unknown status: {value!r}")
    if isinstance(value, int):
        return int(SetStatus(value))
    key = str(value).strip().lower()
    if key.lstrip("-").isdigit():
        return int(SetStatus(int(key)))
    if key not in STATUS_ALIASES:
        raise ValueError(f"Unknown status: {value!r}")
    return STATUS_ALIASES[key]


def normalise_mode(value: Any) -> int:
    """Accept ruleset names, short aliases or integer codes."""

    if isinstance(value, int) and not isinstance(value, bool):
        return int(Mode(value))
    key = str(value).strip().lower()
    if key not in MODE_ALIASES:
        raise ValueError(f"Unknown mode: {value!r}")
    return MODE_ALIASES[key]


def parse_timestamp(value: Any) -> int | None:
    """Convert ISO-8601 strings (or epoch numbers) to UTC epoch seconds."""

    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text.replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


@dataclass(slots=True)
class VariantDescriptor:
    """Storage key, byte size and content hash of one archive variant."""

    key: str
    size: int
    sha256: str


@dataclass(slots=True)
class ItemRecord:
    id: int
    set_id: int
    mode: int
    status: int
    version: str
    length: int
    stars: float
    bpm: float
    cs: float
    ar: float
    od: float
    hp: float
    count_circles: int
    count_sliders: int
    count_spinners: int
    checksum: str | None = None


@dataclass(slots=True)
class SetRecord:
    id: int
    title: str
    title_unicode: str
    artist: str
    artist_unicode: str
    creator: str
    creator_id: int | None
    source: str
    language: str
    genre: str
    tags: str
    status: int
    time_submitted: int | None
    time_ranked: int | None
    is_download_disabled: bool
    is_nsfw: bool
    has_video: bool
    items: list[ItemRecord] = field(default_factory=list)
    stripped: VariantDescriptor | None = None
    alt_media: VariantDescriptor | None = None


# Columns compared by the change scanner; storage keys, hashes and sizes excluded.
SET_COMPARE_FIELDS = (
    "title",
    "title_unicode",
    "artist",
    "artist_unicode",
    "creator",
    "source",
    "language",
    "genre",
    "tags",
    "status",
    "time_submitted",
    "time_ranked",
    "is_download_disabled",
    "is_nsfw",
    "has_video",
)
ITEM_COMPARE_FIELDS = (
    "mode",
    "status",
    "version",
    "length",
    "stars",
    "bpm",
    "cs",
    "ar",
    "od",
    "hp",
    "count_circles",
    "count_sliders",
    "count_spinners",
)


def _name(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return "" if value is None else str(value)


def _float(value: Any) -> float:
    return float(value) if value not in (None, "") else 0.0


def _int(value: Any) -> int:
    return int(value) if value not in (None, "") else 0


def map_item(payload: dict[str, Any], set_id: int) -> ItemRecord:
    return ItemRecord(
        id=int(payload["id"]),
        set_id=set_id,
        mode=normalise_mode(payload.get("mode_int", payload.get("mode", 0))),
        status=normalise_status(payload.get("status", payload.get("ranked", 0))),
        version=str(payload.get("version") or ""),
        length=_int(payload.get("total_length")),
        stars=_float(payload.get("difficulty_rating")),
        bpm=_float(payload.get("bpm")),
        cs=_float(payload.get("cs")),
        ar=_float(payload.get("ar")),
        od=_float(payload.get("accuracy")),
        hp=_float(payload.get("drain")),
        count_circles=_int(payload.get("count_circles")),
        count_sliders=_int(payload.get("count_sliders")),
        count_spinners=_int(payload.get("count_spinners")),
        checksum=payload.get("checksum"),
    )


def map_set(payload: dict[str, Any]) -> SetRecord:
    """Build a ``SetRecord`` (with items) from a ``beatmapsets/{id}`` response."""

    set_id = int(payload["id"])
    availability = payload.get("availability") or {}
    items = [map_item(item, set_id) for item in payload.get("beatmaps") or []]
    items.sort(key=lambda item: item.id)
    return SetRecord(
        id=set_id,
        title=str(payload.get("title") or ""),
        title_unicode=str(payload.get("title_unicode") or payload.get("title") or ""),
        artist=str(payload.get("artist") or ""),
        artist_unicode=str(payload.get("artist_unicode") or payload.get("artist") or ""),
        creator=str(payload.get("creator") or ""),
        creator_id=payload.get("user_id"),
        source=str(payload.get("source") or ""),
        language=_name(payload.get("language")),
        genre=_name(payload.get("genre")),
        tags=str(payload.get("tags") or ""),
        status=normalise_status(payload.get("status", payload.get("ranked", 0))),
        time_submitted=parse_timestamp(payload.get("submitted_date")),
        time_ranked=parse_timestamp(payload.get("ranked_date")),
        is_download_disabled=bool(availability.get("download_disabled")),
        is_nsfw=bool(payload.get("nsfw")),
        has_video=bool(payload.get("video")),
        items=items,
    )


def changed_fields(old: SetRecord, new: SetRecord) -> list[str]:
    """Return the names of differing compared fields (``items`` for item drift)."""

    diffs = [name for name in SET_COMPARE_FIELDS if getattr(old, name) != getattr(new, name)]
    if len(old.items) != len(new.items):
        diffs.append("items")
        return diffs
    old_items = {item.id: item for item in old.items}
    for item in new.items:
        previous = old_items.get(item.id)
        if previous is None:
            diffs.append("items")
            break
        if any(getattr(previous, name) != getattr(item, name) for name in ITEM_COMPARE_FIELDS):
            diffs.append("items")
            break
    return diffs


__all__ = [
    "ITEM_COMPARE_FIELDS",
    "ItemRecord",
    "MODE_ALIASES",
    "Mode",
    "SET_COMPARE_FIELDS",
    "STATUS_ALIASES",
    "SetRecord",
    "SetStatus",
    "VariantDescriptor",
    "changed_fields",
    "map_item",
    "map_set",
    "normalise_mode",
    "normalise_status",
    "parse_timestamp",
]
