"""Pydantic models used across catalog-mirror configuration flow."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ScheduleType(str, Enum):
    """Scheduler modes supported by the job adapter."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleConfig(BaseModel):
    """Configuration describing when a job should run."""

    type: ScheduleType = Field(default=ScheduleType.INTERVAL)
    value: Any = Field(
        default=None,
        description="Cron expression, interval seconds/kwargs or ISO datetime, depending on type.",
    )
    enabled: bool = True

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL and not isinstance(self.value, (int, float, dict)):
            raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
        if (
            self.type is ScheduleType.ONCE
            and self.value is not None
            and not isinstance(self.value, str)
        ):
            raise ValueError("Once schedule expects ISO datetime string or null")
        return self


class RetryConfig(BaseModel):
    """Bounded exponential backoff parameters for upstream requests."""

    max_attempts: int = 10
    base_delay: float = 3.0
    multiplier: float = 2.0
    jitter: float = 0.2
    cap: float = 60.0

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.jitter < 0:
            raise ValueError("base_delay and jitter must be non-negative")
        if self.cap < self.base_delay:
            raise ValueError("cap must be >= base_delay")
        return self


class UpstreamConfig(BaseModel):
    """API endpoint, credentials and rate budget of the upstream service."""

    base_url: str = "https://osu.ppy.sh/api/v2"
    token_url: str = "https://osu.ppy.sh/oauth/token"
    client_id: str = ""
    client_secret: str = ""
    scope: str = "public"
    timeout: float = 15.0
    max_budget: int = 1200
    max_requests_per_second: float = 20.0
    safety_floor: int = 200
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def _validate_budget(self) -> "UpstreamConfig":
        if self.max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be > 0")
        if not 0 <= self.safety_floor <= self.max_budget:
            raise ValueError("safety_floor must lie within [0, max_budget]")
        return self


class DownloadConfig(BaseModel):
    """Archive download endpoints and pacing."""

    archive_url_template: str = "https://osu.ppy.sh/beatmapsets/{set_id}/download"
    item_url_template: str = "https://osu.ppy.sh/osu/{item_id}"
    item_file_suffix: str = ".osu"
    session_cookie: str = ""
    cookie_name: str = "osu_session"
    timeout: float = 120.0
    max_attempts: int = 5
    rate_limit_backoff: float = 300.0
    pacing_delay: float = 5.0
    media_extensions: list[str] = Field(
        default_factory=lambda: ["mp4", "avi", "flv", "mpg", "m4v", "mov"]
    )

    @field_validator("media_extensions", mode="before")
    @classmethod
    def _normalise_extensions(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        return [str(ext).strip().lstrip(".").lower() for ext in value if str(ext).strip()]

    @field_validator("rate_limit_backoff", "pacing_delay")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Delays must be non-negative")
        return value


class StorageConfig(BaseModel):
    """S3-compatible object storage settings."""

    bucket: str = "catalog-archives"
    endpoint_url: str | None = None
    region: str = "auto"
    access_key: str = ""
    secret_key: str = ""
    force_path_style: bool = False
    key_prefix: str = "archives"
    key_version: int = 1
    presign_ttl: int = 3600
    content_type: str = "application/x-osu-beatmap-archive"


class DumpConfig(BaseModel):
    """Location and shape of the upstream's periodic database export."""

    url: str | None = None
    table: str = "osu_beatmapsets"
    id_column: str = "beatmapset_id"
    status_column: str = "approved"
    statuses: list[int] = Field(default_factory=lambda: [1, 2, 4])
    refresh_days: int = 30
    chunk_size: int = 1024 * 256


class ScanConfig(BaseModel):
    """Change detection and recents discovery knobs."""

    recent_window_days: int = 7
    recents_max_seen_pages: int = 3
    progress_log_every: int = 25
    pack_size_slice: int = 500
    search_tokenizer: str = "unicode61 remove_diacritics 2"


class JobsConfig(BaseModel):
    """Schedules of the background jobs."""

    dump_check: ScheduleConfig = Field(
        default_factory=lambda: ScheduleConfig(type=ScheduleType.INTERVAL, value={"hours": 24})
    )
    recents: ScheduleConfig = Field(
        default_factory=lambda: ScheduleConfig(type=ScheduleType.INTERVAL, value={"minutes": 1})
    )
    recent_scan: ScheduleConfig = Field(
        default_factory=lambda: ScheduleConfig(type=ScheduleType.INTERVAL, value={"minutes": 15})
    )
    full_scan: ScheduleConfig = Field(
        default_factory=lambda: ScheduleConfig(type=ScheduleType.CRON, value="0 4 * * *")
    )


class Settings(BaseModel):
    """Root settings document stored in ``data/settings.yaml``."""

    database_path: Path = Field(default=Path("data/catalog.db"))
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    downloads: DownloadConfig = Field(default_factory=DownloadConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    dump: DumpConfig = Field(default_factory=DumpConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_database_path(self, base_dir: Path) -> Path:
        """Return the database path relative to the project root."""

        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "DownloadConfig",
    "DumpConfig",
    "JobsConfig",
    "RetryConfig",
    "ScanConfig",
    "ScheduleConfig",
    "ScheduleType",
    "Settings",
    "StorageConfig",
    "UpstreamConfig",
]
