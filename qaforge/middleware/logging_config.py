"""
Structured logging for the generation service.

Every record emitted while a request is being served carries the request id
and the project id of the route, so one generation run (upload, scenario
batch, test batch) can be followed across the pipeline modules.

- LOG_FORMAT=json      one JSON object per line (log aggregators)
- LOG_FORMAT=readable  colored single-line output (local development)
- unset                JSON in production, readable under DEBUG/TESTING
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Record attributes promoted to top-level JSON keys when present
PIPELINE_FIELDS = (
    "request_id",
    "project_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "purpose",
    "provider",
    "model",
    "latency_ms",
)

_NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "httpx", "openai", "anthropic", "pypdf")


class RequestContextFilter(logging.Filter):
    """Stamp request_id / project_id onto records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = getattr(g, "request_id", None)
        if getattr(record, "project_id", None) is None:
            record.project_id = (request.view_args or {}).get("project_id")
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in PIPELINE_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
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
        tags = []
        for key in ("request_id", "project_id", "purpose"):
            value = getattr(record, key, None)
            if value:
                tags.append(f"{key.split('_')[0]}={value}")
        latency = getattr(record, "latency_ms", None) or getattr(record, "duration_ms", None)
        if latency is not None:
            tags.append(f"{latency:.0f}ms")
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if tags:
            line += " [" + " ".join(tags) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pick_formatter(app) -> logging.Formatter:
    fmt = (app.config.get("LOG_FORMAT") or "").lower()
    if fmt == "json":
        return JSONFormatter()
    if fmt == "readable":
        return ReadableFormatter()
    if app.config.get("DEBUG") or app.config.get("TESTING"):
        return ReadableFormatter()
    return JSONFormatter()


def configure_logging(app):
    """Install one stderr handler on the root logger for this app.

    Existing root handlers are replaced, so building several apps in one
    process (the test suite does) does not duplicate output.
    """
    default_level = "INFO" if not (app.config.get("DEBUG") or app.config.get("TESTING")) else "DEBUG"
    level_name = (app.config.get("LOG_LEVEL") or default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_pick_formatter(app))
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s formatter=%s",
                        level_name, type(handler.formatter).__name__)
