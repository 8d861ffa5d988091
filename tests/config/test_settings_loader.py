from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from catalog_mirror.config import (
    ConfigLocator,
    ConfigRepository,
    DownloadConfig,
    RetryConfig,
    ScheduleConfig,
    ScheduleType,
    Settings,
    UpstreamConfig,
    apply_env_overrides,
)


def test_locator_uses_env_home_and_creates_directories(tmp_path: Path) -> None:
    locator = ConfigLocator()
    assert locator.project_root == tmp_path.resolve()
    for directory in (locator.data_dir, locator.scratch_dir, locator.logs_dir):
        assert directory.exists()
    assert locator.settings_path() == locator.data_dir / "settings.yaml"


def test_repository_writes_defaults_when_missing(tmp_path: Path) -> None:
    repository = ConfigRepository(ConfigLocator())
    settings = repository.load_settings()
    assert settings == Settings()
    stored = yaml.safe_load(repository.locator.settings_path().read_text(encoding="utf-8"))
    assert stored["upstream"]["max_budget"] == 1200
    assert stored["downloads"]["media_extensions"] == ["mp4", "avi", "flv", "mpg", "m4v", "mov"]
    assert repository.database_path() == (tmp_path / "data" / "catalog.db").resolve()


def test_repository_roundtrip_and_cache(tmp_path: Path) -> None:
    repository = ConfigRepository(ConfigLocator())
    settings = Settings(downloads=DownloadConfig(pacing_delay=1.5))
    repository.save_settings(settings)
    assert repository.load_settings() is settings
    reloaded = repository.reload()
    assert reloaded.downloads.pacing_delay == 1.5
    assert reloaded is not settings


def test_environment_overrides_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CATALOG_MIRROR_CLIENT_SECRET", "from-env")
    monkeypatch.setenv("CATALOG_MIRROR_S3_BUCKET", "env-bucket")
    repository = ConfigRepository(ConfigLocator())
    settings = repository.load_settings()
    assert settings.upstream.client_secret == "from-env"
    assert settings.storage.bucket == "env-bucket"
    stored = repository.locator.settings_path().read_text(encoding="utf-8")
    assert "from-env" not in stored


def test_apply_env_overrides_keeps_other_fields() -> None:
    merged = apply_env_overrides(
        {"upstream": {"client_id": "file", "timeout": 5}},
        environ={"CATALOG_MIRROR_CLIENT_ID": "env"},
    )
    assert merged["upstream"] == {"client_id": "env", "timeout": 5}


def test_validators_reject_bad_values() -> None:
    with pytest.raises(ValidationError):
        UpstreamConfig(max_budget=100, safety_floor=200)
    with pytest.raises(ValidationError):
        RetryConfig(base_delay=10, cap=5)
    with pytest.raises(ValidationError):
        DownloadConfig(pacing_delay=-1)
    with pytest.raises(ValidationError):
        ScheduleConfig(type=ScheduleType.CRON, value=5)


def test_media_extensions_are_normalised() -> None:
    config = DownloadConfig(media_extensions=".MP4, avi ,")
    assert config.media_extensions == ["mp4", "avi"]


def test_default_job_schedules() -> None:
    jobs = Settings().jobs
    assert jobs.recents.value == {"minutes": 1}
    assert jobs.recent_scan.value == {"minutes": 15}
    assert jobs.dump_check.value == {"hours": 24}
    assert jobs.full_scan.type is ScheduleType.CRON
