"""
minectl Logging
===============

Human-readable lines on stderr by default, JSON lines (LOG_FORMAT=json)
when minectl runs under automation. Lifecycle calls stamp the backend,
server and operation onto their records through OperationLogger, and
both formats render them.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

CONTEXT_FIELDS = ("provider", "server", "operation")
TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s%(context)s"
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "google", "hcloud")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        entry = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Plain lines with the context appended as key=value pairs."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        record.context = "".join(f" {key}={value}" for key, value in record_context(record).items())
        return super().format(record)


class OperationLogger(logging.LoggerAdapter):
    """
    Logger adapter carrying lifecycle context.

    Usage:
        log = OperationLogger(logger, {"provider": "hetzner"})
        log.bind(server="srv1", operation="create").info("Creating srv1")
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context) -> "OperationLogger":
        return OperationLogger(self.logger, {**self.extra, **context})


def configure_logging(level: str = "INFO", fmt: str = "text", stream=None) -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        fmt: "json" for JSON lines, anything else for plain text
        stream: Target stream, stderr by default (stdout carries command output)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers[:] = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
