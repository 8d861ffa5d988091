"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, apply_env_overrides
from .models import (
    DownloadConfig,
    DumpConfig,
    JobsConfig,
    RetryConfig,
    ScanConfig,
    ScheduleConfig,
    ScheduleType,
    Settings,
    StorageConfig,
    UpstreamConfig,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
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
    "apply_env_overrides",
]
