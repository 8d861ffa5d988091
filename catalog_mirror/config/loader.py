"""Configuration loading helpers for catalog-mirror."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml

from .models import Settings

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
SETTINGS_FILENAME = "settings.yaml"
HOME_ENV = "CATALOG_MIRROR_HOME"

# Environment variable -> (section, field) of the settings document.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CATALOG_MIRROR_CLIENT_ID": ("upstream", "client_id"),
    "CATALOG_MIRROR_CLIENT_SECRET": ("upstream", "client_secret"),
    "CATALOG_MIRROR_SESSION_COOKIE": ("downloads", "session_cookie"),
    "CATALOG_MIRROR_S3_ACCESS_KEY": ("storage", "access_key"),
    "CATALOG_MIRROR_S3_SECRET_KEY": ("storage", "secret_key"),
    "CATALOG_MIRROR_S3_BUCKET": ("storage", "bucket"),
    "CATALOG_MIRROR_S3_ENDPOINT": ("storage", "endpoint_url"),
    "CATALOG_MIRROR_DUMP_URL": ("dump", "url"),
}


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


def apply_env_overrides(payload: dict, environ: Mapping[str, str] | None = None) -> dict:
    """Overlay secrets and endpoints from the environment onto a raw settings mapping."""

    env = os.environ if environ is None else environ
    merged = dict(payload)
    for variable, (section, field) in ENV_OVERRIDES.items():
        value = env.get(variable)
        if not value:
            continue
        block = dict(merged.get(section) or {})
        block[field] = value
        merged[section] = block
    return merged


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    scratch_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(HOME_ENV)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.scratch_dir = (self.data_dir / "scratch").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.scratch_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILENAME


class ConfigRepository:
    """Repository encapsulating settings IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: Settings | None = None

    def load_settings(self) -> Settings:
        if self._cache is not None:
            return self._cache
        path = self.locator.settings_path()
        if path.exists():
            payload = _read_file(path)
        else:
            # Persist defaults without secrets picked up from the environment
            self.save_settings(Settings())
            payload = {}
        settings = Settings.model_validate(apply_env_overrides(payload))
        self._cache = settings
        return settings

    def save_settings(self, settings: Settings) -> None:
        path = self.locator.settings_path()
        _write_file(path, settings.model_dump(mode="json"))
        self._cache = settings

    def database_path(self) -> Path:
        return self.load_settings().resolved_database_path(self.locator.project_root)

    def reload(self) -> Settings:
        self._cache = None
        return self.load_settings()


__all__ = [
    "CONFIG_EXTENSIONS",
    "ConfigLocator",
    "ConfigRepository",
    "ENV_OVERRIDES",
    "apply_env_overrides",
]
