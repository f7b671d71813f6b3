"""
Structured logging configuration.

Development writes one readable line per record, tagged with the workflow
entity and actor when the record carries them, e.g.::

    10:42:07 INFO     tracker.services.state_machine: Transition denied ... [deliverable#12 actor=u-7] (deny)

Production writes one JSON object per record for the log aggregator.
``LOG_LEVEL`` (env or app config) overrides the level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Structured ``extra=`` keys copied into JSON records when present
EXTRA_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "project_id",
    "entity_type",
    "entity_id",
    "actor_id",
    "decision",
    "error_code",
)

NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in EXTRA_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_extras(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def _context(self, record: logging.LogRecord) -> str:
        parts = []
        entity_type = getattr(record, "entity_type", None)
        if entity_type:
            entity_id = getattr(record, "entity_id", None)
            parts.append(f"{entity_type}#{entity_id}" if entity_id is not None else entity_type)
        actor_id = getattr(record, "actor_id", None)
        if actor_id:
            parts.append(f"actor={actor_id}")
        code = getattr(record, "error_code", None)
        if code:
            parts.append(code)
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        line = (
            f"{color}{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}{self._context(record)}"
        )
        decision = getattr(record, "decision", None)
        if decision:
            line += f" ({decision})"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    JSON in production, readable otherwise.  Default level is INFO in
    production and DEBUG elsewhere.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL") or app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info(
            "Logging configured: level=%s format=%s",
            logging.getLevelName(level), "JSON" if is_prod else "readable",
        )
