"""
Structured logging for the automation engine.

Engine code attaches context through ``extra=`` (``event_id``, ``rule_id``,
``document_id`` ...).  The JSON formatter emits those keys as fields; the
text formatter renders them as a short ``[key=value]`` tail so a rule run can
be followed across the event worker and action pool threads.

LOG_FORMAT selects the formatter explicitly; otherwise debug/testing apps log
text and everything else logs JSON.
"""

import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_KEYS = (
    "event_id",
    "event_type",
    "entity_type",
    "entity_id",
    "workflow_id",
    "rule_id",
    "action_type",
    "document_type",
    "document_id",
    "chain_id",
    "group_id",
    "level",
    "job_name",
)

_NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def record_context(record: logging.LogRecord) -> dict:
    """Engine context attached to a record via ``extra=``."""
    return {k: getattr(record, k) for k in CONTEXT_KEYS if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        entry.update(record_context(record))
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            entry["duration_ms"] = duration
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Single-line developer format with the engine context appended."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:<7}"
        if self.color and record.levelno in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelno]}{level}{self.RESET}"
        line = f"{ts} {level} {record.threadName:<14} {record.name}: {record.getMessage()}"
        ctx = record_context(record)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if isinstance(duration, (int, float)):
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    The level comes from LOG_LEVEL (DEBUG for debug/testing apps, INFO
    otherwise).  Existing root handlers are replaced so repeated app creation
    in tests does not duplicate output.
    """
    verbose = app.config.get("DEBUG", False) or app.config.get("TESTING", False)
    level_name = (app.config.get("LOG_LEVEL") or ("DEBUG" if verbose else "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    fmt = (app.config.get("LOG_FORMAT") or ("text" if verbose else "json")).lower()
    formatter = JSONFormatter() if fmt == "json" else TextFormatter(color=sys.stderr.isatty())

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
