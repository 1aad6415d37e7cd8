"""
Runner Pool - Structured Logging

JSON-lines logging on top of the stdlib logging module. Every decision the
controller takes is logged with the fields needed to correlate it
(node, vmid, runner name).

Usage:
    from core.logging import configure_logging, get_logger, bind

    configure_logging(level="INFO")
    log = bind(get_logger("reconciler"), node="pve1", vmid=105)
    log.info("deleting stopped virtual machine")
    # {"timestamp": "...", "level": "INFO", "logger": "runner_pool.reconciler",
    #  "message": "deleting stopped virtual machine", "node": "pve1", "vmid": 105, ...}
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "runner_pool"

# Server loggers routed through the same handler so access logs are JSON too.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "runner_pool"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("RP_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])
            entry["exception.stacktrace"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "runner_pool",
) -> logging.Logger:
    """
    Configure the runner_pool logger (and uvicorn's) with JSON output.

    Safe to call repeatedly: existing handlers are replaced, not stacked.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(numeric)

    logger = logging.getLogger(ROOT_LOGGER)
    for name in (ROOT_LOGGER, *_SERVER_LOGGERS):
        target = logging.getLogger(name)
        target.handlers.clear()
        target.setLevel(numeric)
        target.propagate = False
        if name != "uvicorn.error":  # propagates to "uvicorn"
            target.addHandler(handler)
    logging.getLogger("uvicorn.error").propagate = True

    # Reset children so they inherit from the namespace root
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the runner_pool namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Bound Context
# ═══════════════════════════════════════════════════════════════════

class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that attaches fixed structured fields to every record."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        structured = {**self.extra, **extra.pop("structured", {})}
        kwargs["extra"] = {**extra, "structured": structured}
        return msg, kwargs

    def bind(self, **fields: Any) -> ContextAdapter:
        return ContextAdapter(self.logger, {**self.extra, **fields})


def bind(logger: logging.Logger | ContextAdapter, **fields: Any) -> ContextAdapter:
    """Return a logger that adds `fields` to every entry it emits."""
    if isinstance(logger, ContextAdapter):
        return logger.bind(**fields)
    return ContextAdapter(logger, fields)
