"""User settings stored as JSON under ``~/.omp-browser``."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

import orjson
from loguru import logger

APP_DIR_NAME = ".omp-browser"
CONFIG_FILE = "config.json"
CACHE_FILE = "servers_cache.json"
FALLBACK_FILE = "servers.json"
DEFAULT_MASTER_SERVER = "https://api.open.mp/servers"


def config_dir() -> Path:
    return Path.home() / APP_DIR_NAME


def debug_enabled() -> bool:
    return os.environ.get("OMP_BROWSER_DEBUG", "").lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Tunables for the refresh engine and the browser.

    The skip window (hours) and the cache TTL (minutes) are separate
    policies and are never derived from each other.
    """

    master_server: str = DEFAULT_MASTER_SERVER
    fallback_file: str = ""
    cache_file: str = ""
    concurrency: int = 64
    probe_timeout: float = 3.0
    query_timeout: float = 1.5
    fetch_timeout: float = 5.0
    cycle_deadline: float = 10.0
    skip_window_hours: float = 24.0
    cache_ttl_minutes: float = 60.0
    debounce: float = 0.5
    poll_interval: float = 1.0
    history_size: int = 50
    startup_delay: float = 0.5
    view_rebuild_interval: float = 2.0
    last_search: str = ""

    @property
    def fallback_path(self) -> Path:
        if self.fallback_file:
            return Path(self.fallback_file).expanduser()
        return config_dir() / FALLBACK_FILE

    @property
    def cache_path(self) -> Path:
        if self.cache_file:
            return Path(self.cache_file).expanduser()
        return config_dir() / CACHE_FILE


def _coerce(name: str, value, default):
    # bool is an int subclass; keep the types strict for numeric settings
    if isinstance(default, bool) or isinstance(value, bool):
        raise TypeError(name)
    if isinstance(default, float) and isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, type(default)):
        return value
    raise TypeError(name)


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings, falling back to defaults for anything unusable."""
    path = path or config_dir() / CONFIG_FILE
    settings = Settings()
    try:
        if not path.exists():
            return settings
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        logger.debug(f"Config file corrupted or invalid, ignoring: {e}")
        return settings
    except OSError as e:
        logger.debug(f"Failed to read config file: {e}")
        return settings

    if not isinstance(data, dict):
        logger.debug("Config file is not a JSON object, ignoring")
        return settings

    for f in fields(Settings):
        if f.name not in data:
            continue
        default = getattr(settings, f.name)
        try:
            setattr(settings, f.name, _coerce(f.name, data[f.name], default))
        except TypeError:
            logger.debug(f"Ignoring config value for {f.name!r}: {data[f.name]!r}")
    return settings


def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    """Persist settings; errors are logged and swallowed like other UI state."""
    path = path or config_dir() / CONFIG_FILE
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(asdict(settings), option=orjson.OPT_INDENT_2))
    except OSError as e:
        logger.debug(f"Failed to save settings (permission/IO error): {e}")
