"""
Logging configuration for the license server.
JSON lines for log aggregators, plain text for local runs.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Optional

_RESERVED = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extras included under ``extra``."""

    def __init__(self, service_name: str = "license-server"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", "%Y-%m-%d %H:%M:%S")


def setup_logging(log_level: Optional[str] = None, json_logs: bool = False) -> None:
    """
    Configure the root logger with a single stdout handler.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default INFO)
        json_logs: emit JSON lines instead of plain text
    """
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_logs else PlainFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("license_server.logging").info(
        "Logging configured: level=%s, format=%s",
        logging.getLevelName(level), "JSON" if json_logs else "plain",
    )
