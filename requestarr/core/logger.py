"""Logging setup shared by every module: stdout plus an optional rotating log file."""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Any

from requestarr.config.env import DEBUG, ENABLE_LOGGING, LOG_DIR, LOG_FILE, LOG_LEVEL

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 5

_handlers_lock = threading.Lock()
_shared_handlers: list[logging.Handler] | None = None


class CustomLogger(logging.Logger):
    """Logger with a helper that attaches tracebacks only when debugging."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error, including the active traceback when DEBUG is enabled."""
        kwargs.setdefault("exc_info", DEBUG)
        self.error(msg, *args, **kwargs)


def _build_handlers() -> list[logging.Handler]:
    formatter = logging.Formatter(_LOG_FORMAT)
    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if ENABLE_LOGGING:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=_MAX_LOG_BYTES,
                backupCount=_LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Read-only log root (tests, local runs): keep stdout only.
            print(f"File logging disabled, cannot open {LOG_FILE}: {e}", file=sys.stderr)

    return handlers


def _get_shared_handlers() -> list[logging.Handler]:
    """Return the process-wide handlers, creating them on first use."""
    global _shared_handlers
    if _shared_handlers is None:
        with _handlers_lock:
            if _shared_handlers is None:
                _shared_handlers = _build_handlers()
    return _shared_handlers


def setup_logger(name: str) -> CustomLogger:
    """Return a configured CustomLogger for the given module name."""
    previous_class = logging.getLoggerClass()
    logging.setLoggerClass(CustomLogger)
    try:
        logger = logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_class)

    if not isinstance(logger, CustomLogger):
        # Logger was created before setup_logger was called; upgrade it in place.
        logger.__class__ = CustomLogger

    logger.setLevel(LOG_LEVEL)
    logger.propagate = False
    if not logger.handlers:
        for handler in _get_shared_handlers():
            logger.addHandler(handler)

    return logger  # type: ignore[return-value]
