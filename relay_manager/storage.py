from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

import pydantic
from platformdirs import user_config_dir

from .models import Settings

APP_NAME = "relay-manager"

logger = logging.getLogger(__name__)


def get_config_paths() -> tuple[Path, Path, Path]:
    cfg_dir = Path(user_config_dir(APP_NAME, appauthor=False))
    cfg_dir.mkdir(parents=True, exist_ok=True)
    state_file = cfg_dir / "state.json"
    settings_file = cfg_dir / "settings.json"
    return cfg_dir, state_file, settings_file


def load_settings() -> Settings:
    """Load application settings, falling back to defaults."""
    _, _, settings_file = get_config_paths()
    if not settings_file.exists():
        return Settings()
    try:
        return Settings.model_validate_json(settings_file.read_text(encoding="utf-8"))
    except (OSError, pydantic.ValidationError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", settings_file, e)
        return Settings()


def save_settings(settings: Settings) -> None:
    """Save application settings."""
    cfg_dir, _, settings_file = get_config_paths()
    cfg_dir.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


class KeyValueStorage(Protocol):
    """String key-value store the caches and registries persist into."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStorage:
    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """All keys kept in one JSON object file, replaced whole on every write."""

    def __init__(self, path: Path | None = None):
        if path is None:
            _, path, _ = get_config_paths()
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: not a JSON object", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)
