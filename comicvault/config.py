from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_CACHE_MAX_BYTES,
    DEFAULT_CACHE_MAX_PAGES,
    DEFAULT_MAX_ENTRY_COUNT,
    DEFAULT_MAX_ENTRY_SIZE,
    DEFAULT_MAX_TOTAL_SIZE,
    DEFAULT_PREFETCH_COUNT,
    DEFAULT_SCRATCH_LIFETIME,
)
from .pathutil import atomic_write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveLimits:
    max_entry_count: int = DEFAULT_MAX_ENTRY_COUNT
    max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE
    max_total_size: int = DEFAULT_MAX_TOTAL_SIZE

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ValueError(f"{f.name} must be positive")


@dataclass(frozen=True)
class Settings:
    max_entry_count: int = DEFAULT_MAX_ENTRY_COUNT
    max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE
    max_total_size: int = DEFAULT_MAX_TOTAL_SIZE
    cache_max_bytes: int = DEFAULT_CACHE_MAX_BYTES
    cache_max_pages: int = DEFAULT_CACHE_MAX_PAGES
    prefetch_count: int = DEFAULT_PREFETCH_COUNT
    scratch_lifetime: float = DEFAULT_SCRATCH_LIFETIME
    vault_dir: str = os.path.join(os.path.expanduser("~"), ".comicvault", "vault")
    temp_dir: Optional[str] = None

    def __post_init__(self):
        for name in ("cache_max_bytes", "cache_max_pages", "scratch_lifetime"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.prefetch_count < 0:
            raise ValueError("prefetch_count must not be negative")
        # Validates the archive limit fields
        self.archive_limits()

    def archive_limits(self) -> ArchiveLimits:
        return ArchiveLimits(
            max_entry_count=self.max_entry_count,
            max_entry_size=self.max_entry_size,
            max_total_size=self.max_total_size,
        )


_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def default_settings_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".comicvault", "settings.json")


def _coerce(name: str, value: Any) -> Any:
    declared = _FIELD_TYPES[name]
    if value is None:
        if "Optional" in str(declared):
            return None
        raise ValueError(f"{name} may not be empty")
    if declared in ("int", int):
        return int(value)
    if declared in ("float", float):
        return float(value)
    return str(value)


def load_settings(path: Optional[str] = None) -> Settings:
    """Read settings from a JSON file; a missing file yields defaults."""
    path = path or default_settings_path()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError:
        return Settings()
    if not isinstance(raw, dict):
        raise ValueError("Settings file must contain a JSON object")
    known: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _FIELD_TYPES:
            logger.warning("Ignoring unknown setting %r in %s", key, path)
            continue
        known[key] = _coerce(key, value)
    return Settings(**known)


def save_settings(settings: Settings, path: Optional[str] = None) -> None:
    path = path or default_settings_path()
    data = json.dumps(asdict(settings), indent=2, sort_keys=True) + "\n"
    atomic_write(path, data.encode("utf-8"))


def update_settings(path: Optional[str] = None, **changes: Any) -> Settings:
    """Apply ``changes`` to the stored settings and persist them.

    This is the only way settings reach disk; ``Settings`` itself is frozen.
    """
    unknown = sorted(set(changes) - set(_FIELD_TYPES))
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
    current = load_settings(path)
    updated = replace(current, **{k: _coerce(k, v) for k, v in changes.items()})
    save_settings(updated, path)
    logger.info("Updated settings: %s", ", ".join(sorted(changes)))
    return updated
