"""
Log formatting for the decision engine.

Debug and testing runs print one colored line per record. Anything else
(production) emits one JSON object per line. ``LOG_LEVEL`` overrides the
level in every mode.

Identifiers travel on the record through ``extra=`` and become top-level
JSON keys when listed in ``EXTRA_FIELDS``:

    logger.info("Transition applied", extra={"instance_id": 4, "transition_id": 9})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "request_id",
    "process_id",
    "instance_id",
    "transition_id",
    "proposal_id",
    "job_name",
)

QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic")


def _exception_text(formatter, record):
    if record.exc_info and record.exc_info[0] is not None:
        return formatter.formatException(record.exc_info)
    return None


class JSONFormatter(logging.Formatter):
    """One JSON document per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            (field, getattr(record, field))
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        trace = _exception_text(self, record)
        if trace:
            entry["exception"] = trace
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Short colored lines for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "36",
        "INFO": "32",
        "WARNING": "33",
        "ERROR": "31",
        "CRITICAL": "35",
    }

    def format(self, record: logging.LogRecord) -> str:
        code = self.LEVEL_COLORS.get(record.levelname)
        level = f"{record.levelname:<8}"
        if code:
            level = f"\033[{code}m{level}\033[0m"

        source = record.name
        job = getattr(record, "job_name", None)
        if job:
            source += f" ({job})"

        line = f"{datetime.fromtimestamp(record.created):%H:%M:%S} {level} {source}: {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"

        trace = _exception_text(self, record)
        return f"{line}\n{trace}" if trace else line


def configure_logging(app):
    """Install a single stderr handler on the root logger for ``app``."""
    testing = app.config.get("TESTING", False)
    structured = not (testing or app.config.get("DEBUG", False))

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    # Replace rather than append so repeated create_app calls do not duplicate output
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging at %s (%s)", level_name, "json" if structured else "text")
