"""
Structured JSON Logging.

Every record is one JSON line, so cache degradations, offline fallbacks
and session transitions can be filtered on their ``event`` field::

    {"timestamp": "...", "level": "WARNING", "logger_name": "offline_cache",
     "message": "Cache write failed for players_t1: ...",
     "extra": {"event": "CACHE_WRITE_FAILED"}}

Components never create loggers themselves; they receive a
``StructuredLogger`` through their constructor.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

# Attribute names present on every LogRecord; anything else came from ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.makeLogRecord({})).keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render a ``LogRecord`` as a single JSON object.

    Keys: ``timestamp`` (ISO-8601 UTC), ``level``, ``logger_name``,
    ``message``, and when present ``extra`` (caller-supplied fields) and
    ``exception`` (formatted traceback).
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }
        extra = {
            key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS
        }
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(stream: Optional[TextIO], level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def _file_handler(path: str, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    """Rotating UTF-8 file handler; raises ``OSError`` when the path is unusable."""
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


class StructuredLogger:
    """Injectable wrapper around a stdlib logger with JSON output.

    Parameters
    ----------
    name:
        Logger name; handlers are attached only the first time a name is
        used.
    level:
        Threshold.  Defaults to ``AppConfig.LOG_LEVEL``.
    stream:
        Console stream (stdout when ``None``).
    log_file, max_bytes, backup_count:
        Rotating file settings.  Default to the ``LOG_*`` settings.
    file_logging:
        ``False`` keeps output on the console stream only (tests, CLI pipes).
        An unwritable log file also degrades to console-only.
    """

    def __init__(
        self,
        name: str = "ondeck",
        level: Optional[int] = None,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
        file_logging: bool = True,
    ) -> None:
        # Imported here: config logs through stdlib logging at import time.
        from ondeck.config import get_config

        cfg = get_config()
        threshold = cfg.log_level if level is None else level
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(threshold)
        if self._logger.handlers:
            return

        self._logger.addHandler(_console_handler(stream, threshold))
        if not file_logging:
            return
        path = log_file or cfg.LOG_FILE
        try:
            self._logger.addHandler(
                _file_handler(
                    path,
                    threshold,
                    cfg.LOG_MAX_BYTES if max_bytes is None else max_bytes,
                    cfg.LOG_BACKUP_COUNT if backup_count is None else backup_count,
                )
            )
        except OSError as exc:
            self._logger.warning(
                "Log file %s is not writable (%s); logging to console only.", path, exc,
            )

    @property
    def logger(self) -> logging.Logger:
        """The underlying ``logging.Logger``."""
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.exception(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "ondeck") -> StructuredLogger:
    """Shorthand for ``StructuredLogger(name)`` with configured defaults."""
    return StructuredLogger(name=name)
