# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Structured logging for pkgmgr.

Records render either as one JSON object per line or as plain text.
Transaction events (step_started, rollback_step, ...) carry their fields as
record extras, so the JSON form can be filtered by transaction_id or step.
"""

import json
import logging
import sys
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

PACKAGE_LOGGER = "pkgmgr"

# Attributes every LogRecord has; anything else arrived through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def event_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record through `extra`."""
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Event fields become top-level keys next to timestamp, level, logger and
    message.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(event_fields(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with event fields appended as key=value pairs."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        fields = event_fields(record)
        fields.pop("event", None)
        line = super().format(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    stream: Optional[TextIO] = None,
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Attach handlers to the package logger.

    Every module logs through logging.getLogger(__name__), so configuring the
    `pkgmgr` parent once covers the whole package. Calling this again
    replaces the handlers instead of stacking them.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"
        stream: Console stream (defaults to stderr)
        log_file: Optional file that receives the same records

    Returns:
        The configured `pkgmgr` logger

    Raises:
        ValueError: If log_level is not a logging level name
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter() if log_format == "json" else TextFormatter()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def configure_logging(config: Any, stream: Optional[TextIO] = None) -> logging.Logger:
    """Configure the package logger from a Config value."""
    return setup_logging(config.log_level, config.log_format, stream=stream)


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "INFO",
    **fields: Any
) -> None:
    """
    Log a structured event.

    Args:
        logger: Logger instance
        event: Event name, also used as the message
        level: Log level name
        **fields: Event fields; names that clash with LogRecord attributes
            are stored with a "field_" prefix
    """
    extra = {"event": event}
    for key, value in fields.items():
        extra[f"field_{key}" if key in _RECORD_ATTRS else key] = value
    getattr(logger, level.lower())(event, extra=extra)
