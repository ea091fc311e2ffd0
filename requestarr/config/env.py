"""Process environment read at import time.

Nothing in here may import from the rest of the package: the logger and the
settings layer both depend on these values.
"""

import json
import os
from pathlib import Path

_TRUE_VALUES = {"true", "yes", "1", "y", "on"}


def string_to_bool(s: str) -> bool:
    return str(s).strip().lower() in _TRUE_VALUES


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return string_to_bool(raw)


CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
USERS_DB_FILE = CONFIG_DIR / "users.db"

LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "requestarr"
LOG_FILE = LOG_DIR / "requestarr.log"


def _debug_enabled() -> bool:
    # The env var wins; otherwise honour a DEBUG key saved through the settings file
    if os.getenv("DEBUG") is not None:
        return env_flag("DEBUG", False)
    try:
        saved = json.loads(SETTINGS_FILE.read_text())
    except (OSError, ValueError):
        return False
    return isinstance(saved, dict) and bool(saved.get("DEBUG", False))


def config_dir_writable() -> bool:
    """Return True when settings and the request database can be persisted."""
    if not CONFIG_DIR.is_dir():
        return False
    marker = CONFIG_DIR / ".write_test"
    try:
        marker.touch()
        marker.unlink()
    except OSError:
        return False
    return True


DEBUG = _debug_enabled()
LOG_LEVEL = "DEBUG" if DEBUG else "INFO"
ENABLE_LOGGING = env_flag("ENABLE_LOGGING", True)

FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", "5000"))

SESSION_COOKIE_SECURE = env_flag("SESSION_COOKIE_SECURE", False)
SESSION_COOKIE_NAME = "requestarr_session"

# Tests and one-off scripts import the app without the status-check thread
START_BACKGROUND_JOBS = env_flag("START_BACKGROUND_JOBS", True)

BUILD_VERSION = os.getenv("BUILD_VERSION", "N/A")
