"""
Logging setup for the automation service.

Two formats, picked from the app config:
  - DEBUG / TESTING: one readable, colored line per record
  - otherwise:       one JSON object per record for the log shipper

LOG_LEVEL overrides the level. Automation code logs with
``extra={"organization_id": ..., "trigger_type": ..., "chain_id": ...}``;
those fields are lifted into the JSON payload (request fields at the top
level, automation fields under "automation") so one cascade can be
followed across lines.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
AUTOMATION_FIELDS = (
    "organization_id",
    "trigger_type",
    "trigger_config_id",
    "chain_id",
    "cascade_depth",
    "job_name",
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "apscheduler")


def _collect(record, keys):
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(_collect(record, REQUEST_FIELDS))
        automation = _collect(record, AUTOMATION_FIELDS)
        if automation:
            payload["automation"] = automation
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for local work."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        tags = []
        if getattr(record, "duration_ms", None) is not None:
            tags.append(f"{record.duration_ms:.0f}ms")
        if getattr(record, "organization_id", None) is not None:
            tags.append(f"org={record.organization_id}")
        if getattr(record, "chain_id", None):
            tags.append(f"chain={record.chain_id[:8]}@{getattr(record, 'cascade_depth', 0)}")
        if tags:
            line += " [" + " ".join(tags) + "]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    testing = app.config.get("TESTING", False)
    readable = app.config.get("DEBUG", False) or testing

    level_name = os.getenv("LOG_LEVEL", "DEBUG" if readable else "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ReadableFormatter() if readable else JSONFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "readable" if readable else "json")
