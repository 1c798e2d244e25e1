"""
Logging Setup
=============

Every module logs through ``logging.getLogger(__name__)`` and attaches
structured fields to notable records with ``extra={"event": ..., ...}``.
This module installs the handlers: a readable console format by default,
or one JSON object per line when ``structured=True``.

Nothing in the measurement code depends on a handler being installed.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# Installed, modules log under "putt_speed.*"; imported flat from src/,
# they log under their bare module names, so the root logger is configured.
ROOT_LOGGER_NAME = __package__ or ""

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter, one record per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class EventFormatter(logging.Formatter):
    """Human-readable formatter that appends the event name when present."""

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        event = getattr(record, "event", None)
        if event:
            formatted = f"{formatted} [{event}]"
        return formatted


def setup_logging(
    level: Union[int, str] = "INFO",
    structured: bool = False,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Logging level name or number
        structured: Emit JSON lines instead of plain text
        log_file: Optional path for a rotating file handler
        max_bytes: Rotation size for the file handler
        backup_count: Number of rotated files to keep

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = EventFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
