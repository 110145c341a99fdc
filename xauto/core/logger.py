"""Structured JSON Logger for the X bookmark sync engine.

Provides JSON-formatted logging for observability and debugging.
Each log entry includes timestamp, level, message, and optional context fields
like tweet_id or job_name for tracing a single item or job run.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Standard LogRecord attributes that are not user context
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

# Context fields whose values must never reach the log stream
REDACTED_FIELDS = frozenset({"api_key", "access_token", "refresh_token", "code_verifier"})
REDACTED = "***"

QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON objects.

    Output format:
        {
            "ts": "2026-01-23T10:30:00.123456+00:00",
            "level": "INFO",
            "msg": "Summarized item",
            "tweet_id": "123456789",
            ...extra fields...
        }

    Credential fields in REDACTED_FIELDS are masked.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="microseconds"),
            "level": record.levelname,
            "msg": record.getMessage(),
        }

        if record.name and record.name != "root":
            log_entry["logger"] = record.name

        # Fields passed via extra={...} or a ContextLoggerAdapter
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            log_entry[key] = REDACTED if key in REDACTED_FIELDS and value else value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges fixed context fields into every record.

    Usage:
        logger = ContextLoggerAdapter(get_logger(__name__), tweet_id="123")
        logger.info("Summarized")  # Includes tweet_id automatically
    """

    def __init__(self, logger: logging.Logger, **context: Any):
        super().__init__(logger, dict(context))

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str = "INFO", stream: Any = None) -> None:
    """Configure the root logger with JSON formatting.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Output stream (defaults to sys.stderr).
    """
    if stream is None:
        stream = sys.stderr

    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    root_logger.addHandler(handler)
    level_no = getattr(logging, level.upper())
    root_logger.setLevel(level_no)

    # httpx logs every request URL (including pagination tokens) at INFO
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(
            logging.WARNING if level_no > logging.DEBUG else logging.NOTSET
        )


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance (typically named after __name__)."""
    return logging.getLogger(name)


def get_item_logger(name: str, tweet_id: str) -> ContextLoggerAdapter:
    """Get a logger adapter that includes tweet_id in all messages.

    Example:
        logger = get_item_logger(__name__, item.tweet_id)
        logger.info("Summary stored")
        # Output: {"ts": "...", "level": "INFO", "msg": "Summary stored", "tweet_id": "123"}
    """
    return ContextLoggerAdapter(get_logger(name), tweet_id=tweet_id)


def get_job_logger(name: str, job_name: str, run_id: str) -> ContextLoggerAdapter:
    """Get a logger adapter that tags records with the job name and run id."""
    return ContextLoggerAdapter(get_logger(name), job_name=job_name, run_id=run_id)

