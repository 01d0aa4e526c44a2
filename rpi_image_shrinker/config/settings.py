"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_IMAGE_SHRINKER_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-image-shrinker" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_COMPRESSION = "xz"
DEFAULT_INIT_RESIZE_PATH = "/usr/lib/raspi-config/init_resize.sh"
DEFAULT_SANITIZE_PATHS = [
    "root/.bash_history",
    "home/*/.bash_history",
    "home/*/.python_history",
    "home/*/.cache",
    "root/.cache",
    "var/log/**/*",
    "var/cache/apt/archives/*.deb",
    "var/lib/apt/lists/*",
    "tmp/*",
    "var/tmp/*",
]

DEFAULT_SETTINGS: dict[str, Any] = {
    "output_dir": ".",
    "compression": DEFAULT_COMPRESSION,
    "work_dir_parent": None,
    "sanitize_enabled": True,
    "zero_fill_enabled": True,
    "auto_expand_enabled": True,
    "sanitize_paths": DEFAULT_SANITIZE_PATHS,
    "init_resize_path": DEFAULT_INIT_RESIZE_PATH,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


load_settings()
