"""
Structured logging for the pipeline and the API.

Pipeline code passes unit context through ``extra``::

    logger.warning("Phase failed: %s", exc,
                   extra={"tenant_id": t.id, "phase_id": p.id, "run_id": run.id})

Output format: JSON lines in production, one readable line in development.
``LOG_FORMAT=json|text`` forces either; ``LOG_LEVEL`` sets the level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Pipeline unit identifiers, in the order they are shown
UNIT_FIELDS = ("run_id", "job_name", "tenant_id", "project_id", "phase_id")
TIMING_FIELD = "duration_ms"

QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "anthropic", "openai", "google_genai")


def _unit_context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in UNIT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_unit_context(record),
        }
        duration = getattr(record, TIMING_FIELD, None)
        if duration is not None:
            entry[TIMING_FIELD] = duration
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``09:30:12 WARNING  capacity_insights.pipeline: msg (run_id=4 phase_id=7) [12ms]``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"

        ctx = _unit_context(record)
        if ctx:
            line += " (" + " ".join(f"{k}={v}" for k, v in ctx.items()) + ")"
        duration = getattr(record, TIMING_FIELD, None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _use_json(app) -> bool:
    forced = os.getenv("LOG_FORMAT", "").lower()
    if forced in ("json", "text"):
        return forced == "json"
    return not app.config.get("DEBUG") and not app.config.get("TESTING")


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    as_json = _use_json(app)
    default_level = "INFO" if as_json else "DEBUG"
    level = logging.getLevelName(os.getenv("LOG_LEVEL", default_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not app.config.get("TESTING"):
        app.logger.info("Logging ready (level=%s, format=%s)",
                        logging.getLevelName(level), "json" if as_json else "text")
