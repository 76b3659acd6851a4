"""
Structured JSON logging for the attempt engine.

Every entry is one JSON object on stdout with a channel, the request id of
the HTTP call that caused it (if any), business context such as
attempt_id / section_index, and free-form extras. Engine work also runs on
clock and flush threads, so entries written off the main thread carry the
thread name.

Channels:
    http     request lifecycle and route outcomes
    db       persistence boundary (progress saves, discarded flushes)
    engine   attempt/section transitions and hosted sessions
    clock    tick loop and drift
    sync     flush queue and the HTTP persistence client
    grading  scoring of submitted attempts
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

# Set per request by the middleware in main.py. Clock and sync threads are
# not inside a request and log an empty id.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CHANNELS = ("http", "db", "engine", "clock", "sync", "grading")


class StructuredJsonFormatter(logging.Formatter):
    """Render a LogRecord as {timestamp, level, channel, message, context, extra}."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        context = {"request_id": request_id_var.get("")}
        context.update(getattr(record, "context", None) or {})
        entry = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.") + "{:03d}Z".format(int(record.msecs)),
            "level": record.levelname,
            "channel": getattr(record, "channel", None) or _channel_of(record.name),
            "message": record.getMessage(),
            "context": context,
            "extra": getattr(record, "extra_data", None) or {},
        }
        if record.threadName and record.threadName != "MainThread":
            entry["thread"] = record.threadName
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _channel_of(logger_name: str) -> str:
    prefix, _, channel = logger_name.partition(".")
    return channel if prefix == "app" and channel else "app"


def setup_logging(level: str = None) -> logging.Logger:
    """Install the JSON handler on the root logger and set channel levels."""
    resolved = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)
    root_logger.handlers = [handler]

    for channel in CHANNELS:
        logging.getLogger("app." + channel).setLevel(resolved)
    return root_logger


def get_logger(channel: str) -> logging.Logger:
    """Logger for one of CHANNELS, named app.<channel>."""
    return logging.getLogger("app." + channel)


def log_with_context(logger: logging.Logger, level: str, message: str,
                     context: dict = None, extra_data: dict = None, exc_info=None):
    """
    Emit one structured entry.

    Args:
        logger: a channel logger from get_logger()
        level: level name, e.g. "INFO" or "WARNING"
        message: human-readable message
        context: who/what the entry is about (attempt_id, section_index, user_id)
        extra_data: measurements and details (duration_ms, sequence, trigger)
        exc_info: forwarded to Logger.log for tracebacks
    """
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        message,
        exc_info=exc_info,
        extra={
            "context": context or {},
            "extra_data": extra_data or {},
            "channel": _channel_of(logger.name),
        },
    )


def generate_request_id() -> str:
    return str(uuid.uuid4())
