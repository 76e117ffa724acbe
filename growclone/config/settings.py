"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "GROWCLONE_SETTINGS_PATH",
        Path.home() / ".config" / "growclone" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_ALIGNMENT_SECTORS = 2048
DEFAULT_GUARD_SECTORS = 2048
DEFAULT_RESERVE_GB = 1
DEFAULT_BACKUP_LEADING_SECTORS = 2048
DEFAULT_REPROBE_TIMEOUT_SECONDS = 10.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "reserve_gb": DEFAULT_RESERVE_GB,
    "alignment_sectors": DEFAULT_ALIGNMENT_SECTORS,
    "guard_sectors": DEFAULT_GUARD_SECTORS,
    "backup_dir": ".",
    "backup_leading_sectors": DEFAULT_BACKUP_LEADING_SECTORS,
    "reprobe_timeout_seconds": DEFAULT_REPROBE_TIMEOUT_SECONDS,
    "growable_fstype": "ntfs",
    "boot_fstype": "vfat",
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


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
