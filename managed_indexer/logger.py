"""Logging setup for the managed indexer.

Everything goes to stderr so the CLI can keep stdout for JSON results.
``LOG_LEVEL`` picks the level and the CLI calls ``use_json_output`` when
``LOG_FORMAT=json``. Per-root messages go through ``ContextLogger`` so the
workspace root travels with the record.
"""
import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
logging.basicConfig(
    level=_log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stderr)]
)

_loggers: Dict[str, logging.Logger] = {}

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra_fields`` are merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            data["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc) if exc else None,
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }
        data.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(data, default=str)


def get_logger(name: str) -> logging.Logger:
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = logging.getLogger(name)
        logger.setLevel(_log_level)
    return logger


def use_json_output(level: Optional[str] = None) -> None:
    """Switch the root handlers to JSON lines."""
    root = logging.getLogger()
    for handler in root.handlers:
        handler.setFormatter(JSONFormatter())
    if level:
        root.setLevel(getattr(logging, level.upper(), logging.INFO))


class ContextLogger:
    """Attaches fixed fields (e.g. ``root=...``) to every record it emits."""

    __slots__ = ("logger", "context")

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = context

    def _log(self, level: int, msg: str, exc_info: Any = None, **extra) -> None:
        if not self.logger.isEnabledFor(level):
            return
        record = self.logger.makeRecord(self.logger.name, level, "(unknown file)", 0, msg, (), exc_info)
        record.extra_fields = {**self.context, **extra}
        self.logger.handle(record)

    def debug(self, msg: str, **extra) -> None:
        self._log(logging.DEBUG, msg, **extra)

    def info(self, msg: str, **extra) -> None:
        self._log(logging.INFO, msg, **extra)

    def error(self, msg: str, exc_info: Any = None, **extra) -> None:
        self._log(logging.ERROR, msg, exc_info=exc_info, **extra)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def safe_int(value: Any, default: int, logger: Optional[logging.Logger] = None, context: str = "") -> int:
    """Parse an env-style integer; blank or malformed input yields ``default``."""
    if _blank(value):
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        if logger:
            logger.warning(f"Ignoring {context}={value!r}: not an integer, using {default}")
        return default


def safe_bool(value: Any, default: bool, logger: Optional[logging.Logger] = None, context: str = "") -> bool:
    """Parse an env-style flag (1/0, true/false, yes/no, on/off)."""
    if _blank(value):
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    if logger:
        logger.warning(f"Ignoring {context}={value!r}: not a boolean, using {default}")
    return default
