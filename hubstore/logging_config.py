"""Structured logging configuration for hubstore.

``setup_logging`` takes the format (``text`` or ``json``) and level from the
settings object of whichever service is starting. In JSON mode, fields
passed through ``extra=`` (request_id, path, method, status_code,
duration_ms, event_category, action, ...) become top-level keys.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from pythonjsonlogger.json import JsonFormatter

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"


class StructuredJsonFormatter(JsonFormatter):
    """One JSON object per line, tracebacks as a list of lines."""

    def __init__(self) -> None:
        super().__init__(JSON_FIELDS, datefmt="%Y-%m-%dT%H:%M:%S")

    def add_fields(
        self, log_data: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]
    ) -> None:
        message_dict.pop("exc_info", None)
        super().add_fields(log_data, record, message_dict)
        if record.exc_info and record.exc_info[1] is not None:
            log_data["traceback"] = traceback.format_exception(*record.exc_info)


def setup_logging(log_format: str = "text", log_level: str = "INFO") -> None:
    """Replace the root logger's handlers with a single stream handler."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler()
    handler.setLevel(level)
    if log_format.lower() == "json":
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    # Tests call this repeatedly.
    root.handlers.clear()
    root.addHandler(handler)


def log_startup_info(service: str, did: str, base_url: str | None = None) -> None:
    import hubstore

    logging.getLogger("hubstore").info(
        "%s started as %s",
        service,
        did,
        extra={
            "version": hubstore.__version__,
            "service": service,
            "did": did,
            "base_url": base_url,
        },
    )
