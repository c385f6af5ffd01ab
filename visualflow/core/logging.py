# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Structured logging for the Visual Flow engine.

Every logger lives under the "visualflow" namespace and writes one line per
record to stdout, as JSON (default) or text. Fields passed through
log_event() / `extra=` (flow_id, execution_id, node_id, ...) are emitted
next to the message in both formats.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extra fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_extra_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable line with extra fields appended as key=value."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _extra_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def get_logger(
    name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Get a configured logger.

    Calling it again for the same name reconfigures the existing handlers
    instead of stacking new ones.

    Args:
        name: Logger name (usually __name__)
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"
        log_file: Also write to this file
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.getLevelName(log_level.upper()))

    formatter = JSONFormatter() if log_format == "json" else TextFormatter()
    for handler in list(logger.handlers):
        if getattr(handler, "_visualflow", False):
            logger.removeHandler(handler)
            handler.close()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler._visualflow = True
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "INFO",
    **fields: Any
) -> None:
    """
    Log an event with structured fields.

    Field names that clash with LogRecord attributes get a "field_" prefix.
    """
    extra = {(f"field_{k}" if k in _STANDARD_ATTRS else k): v for k, v in fields.items()}
    logger.log(logging.getLevelName(level.upper()), event, extra=extra)


def _configured(name: str) -> logging.Logger:
    from visualflow.core.config import get_config
    config = get_config()
    return get_logger(name, log_level=config.log_level, log_format=config.log_format)


def get_api_logger() -> logging.Logger:
    return _configured("visualflow.api")


def get_service_logger(service_name: str) -> logging.Logger:
    """Logger for a service or engine component, level and format from config."""
    return _configured(f"visualflow.{service_name}")
