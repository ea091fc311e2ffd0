"""Layered runtime configuration.

Values resolve in this order:

1. Per-user overrides (``user_settings`` table), when ``user_id`` is given
2. Environment variables
3. ``CONFIG_DIR/settings.json``
4. The caller's default

Environment values are strings, so they are coerced toward the type of the
default the caller passes in.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from requestarr.config.env import SETTINGS_FILE, string_to_bool
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

_MISSING = object()


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a raw (usually string) value toward the default's type."""
    if default is None or not isinstance(value, str):
        return value

    raw = value.strip()
    try:
        if isinstance(default, bool):
            return string_to_bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, (list, dict)):
            return json.loads(raw) if raw else type(default)()
    except (ValueError, TypeError) as e:
        logger.warning(f"Ignoring malformed config value {value!r}: {e}")
        return default
    return raw


class Config:
    """Thread-safe view over settings.json, the environment and per-user overrides."""

    def __init__(self, settings_file: Path = SETTINGS_FILE):
        self._settings_file = Path(settings_file)
        self._lock = threading.Lock()
        self._cache: Dict[str, Any] = {}
        self._cache_mtime: Optional[float] = None
        self._user_settings_loader: Optional[Callable[[int], Dict[str, Any]]] = None

    def set_user_settings_loader(self, loader: Optional[Callable[[int], Dict[str, Any]]]) -> None:
        """Register the callable used to fetch per-user overrides (usually UserDB.get_user_settings)."""
        self._user_settings_loader = loader

    def load_settings_file(self) -> Dict[str, Any]:
        """Return settings.json contents, re-reading when the file changes on disk."""
        try:
            mtime = self._settings_file.stat().st_mtime
        except OSError:
            return {}

        with self._lock:
            if self._cache_mtime == mtime:
                return dict(self._cache)
            try:
                with open(self._settings_file, "r") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Could not read settings file {self._settings_file}: {e}")
                return dict(self._cache)
            if not isinstance(data, dict):
                logger.warning(f"Settings file {self._settings_file} must contain a JSON object")
                data = {}
            self._cache = data
            self._cache_mtime = mtime
            return dict(data)

    def _user_value(self, key: str, user_id: int) -> Any:
        if self._user_settings_loader is None:
            return _MISSING
        try:
            user_settings = self._user_settings_loader(user_id) or {}
        except Exception as e:
            logger.warning(f"Failed to load settings for user_id={user_id}: {e}")
            return _MISSING
        return user_settings.get(key, _MISSING)

    def get(self, key: str, default: Any = None, user_id: Optional[int] = None) -> Any:
        """Resolve a configuration value."""
        if user_id is not None:
            user_value = self._user_value(key, user_id)
            if user_value is not _MISSING and user_value is not None:
                return _coerce(user_value, default)

        env_value = os.environ.get(key)
        if env_value is not None:
            return _coerce(env_value, default)

        file_value = self.load_settings_file().get(key, _MISSING)
        if file_value is not _MISSING and file_value is not None:
            return _coerce(file_value, default)

        return default


config = Config()
