"""Process-wide logging setup.

Everything goes to stderr and, when ``LOG_FILE`` is set, to that file as well.
Per-target audit lines (``bulk_orchestrator.audit``) can additionally be split
into their own file with ``LOG_AUDIT_FILE`` so they can be shipped or retained
separately from operational logs.
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from bulk_orchestrator.config import load_settings

AUDIT_LOGGER_NAME = "bulk_orchestrator.audit"

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Floor levels for chatty third-party loggers.
_QUIET_LOGGERS = {"uvicorn.access": logging.WARNING}

_logging_configured = False
_logging_lock = threading.Lock()
_audit_handler: logging.Handler | None = None

_logger = logging.getLogger(__name__)


def _formatter() -> logging.Formatter:
    return logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)


def _file_handler(path: str) -> logging.Handler | None:
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
    except OSError as exc:
        _logger.warning("Failed to open log file %s: %s", path, exc)
        return None
    handler.setFormatter(_formatter())
    return handler


def _install_audit_handler(path: str | None) -> None:
    global _audit_handler

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    if _audit_handler is not None:
        audit_logger.removeHandler(_audit_handler)
        _audit_handler.close()
        _audit_handler = None
    if not path:
        return
    handler = _file_handler(path)
    if handler is None:
        return
    handler.setLevel(logging.INFO)
    audit_logger.addHandler(handler)
    _audit_handler = handler


def configure_logging() -> None:
    """Configure root handlers, the audit file and quiet third-party loggers."""
    global _logging_configured

    settings = load_settings()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(_formatter())
    handlers: list[logging.Handler] = [stream_handler]

    if settings.logging.file:
        file_handler = _file_handler(settings.logging.file)
        if file_handler is not None:
            handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    _install_audit_handler(settings.logging.audit_file)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, quiet_level))

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)
