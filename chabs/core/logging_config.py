"""
logging_config.py — Log output for the CHABS storage core

Library modules only call logging.getLogger("chabs.<area>"); the process
entry point (app.py, or whatever embeds the providers) calls
setup_logging() once.

Log calls attach context through `extra=`. These keys are carried into
JSON lines and appended as key=value pairs on console lines:
  collection, record_id, op      storage mutations
  state, queue_len               sync coordinator
  route, method, duration_ms     cloud backend requests
"""
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone

from chabs.core import paths

CONTEXT_FIELDS = ("collection", "record_id", "op", "state", "queue_len",
                  "route", "method", "duration_ms")

LOG_FILE = "chabs.log"
LOG_FILE_BYTES = 5_000_000
LOG_FILE_COUNT = 5
QUIET_LOGGERS = ("urllib3", "werkzeug", "reportlab")


def _context(record) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, then any context."""

    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:04:05 W chabs.sync: message  state=OFFLINE_QUEUED queue_len=3`

    Warnings and errors are colored when writing to a terminal.
    """

    LEVEL_COLORS = {logging.WARNING: "\033[33m", logging.ERROR: "\033[31m",
                    logging.CRITICAL: "\033[35m"}
    RESET = "\033[0m"

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record):
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname[0]} {record.name}: {record.getMessage()}"
        context = _context(record)
        if context:
            line += "  " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info and record.exc_info[0]:
            line += "\n" + self.formatException(record.exc_info)
        color = self.LEVEL_COLORS.get(record.levelno) if self.color else None
        return f"{color}{line}{self.RESET}" if color else line


def _file_handler(data_dir):
    target = paths.ensure_dir(paths.log_dir(data_dir))
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(target, LOG_FILE), maxBytes=LOG_FILE_BYTES, backupCount=LOG_FILE_COUNT)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(level=None, json_logs=None, data_dir=None):
    """Route all logging to the console and to <data_dir>/logs/chabs.log.

    level defaults to LOG_LEVEL (else INFO); json_logs to CHABS_JSON_LOGS.
    The file always gets JSON lines. Returns the log file path, or None
    when the log directory cannot be written.
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = _env_flag("CHABS_JSON_LOGS")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs
                         else HumanFormatter(color=sys.stderr.isatty()))
    root.addHandler(console)

    log = logging.getLogger("chabs")
    log_path = None
    try:
        file_handler = _file_handler(data_dir)
        root.addHandler(file_handler)
        log_path = file_handler.baseFilename
    except OSError as e:
        log.warning("File logging disabled: %s", e)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    log.info("Logging initialized at %s", level, extra={"op": "logging"})
    return log_path
