"""
Structured logging configuration.

- Development: human-readable colored lines with workflow context appended
- Production: one JSON object per line (log aggregator compatible)
- Log level: controlled via LOG_LEVEL env variable

Services attach workflow context with ``extra={"request_id": ..., "step_id": ...}``;
both formatters pick those fields up.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# HTTP fields set by the timing middleware
_HTTP_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "trace_id")
# Workflow fields set by services
_CONTEXT_KEYS = ("request_id", "step_id", "approver_id", "user_id", "schedule_id", "delegation_id", "event_type")


def _record_fields(record: logging.LogRecord, keys) -> dict:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_record_fields(record, _HTTP_KEYS))
        context = _record_fields(record, _CONTEXT_KEYS)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        context = _record_fields(record, _CONTEXT_KEYS)
        if context:
            line += " (" + " ".join(f"{k}={v}" for k, v in context.items()) + ")"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Production (not DEBUG, not TESTING) logs JSON at INFO; everything else
    logs readable lines at DEBUG. LOG_LEVEL overrides the level.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    # create_app may run more than once per process (tests)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if production else "readable")
