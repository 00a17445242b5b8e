"""
Structured logging for the KinuxOTA update executor.

Every record is emitted as a single JSON object so update runs can be
grepped and shipped by whatever collects the host's logs. Transaction
context (version, command id, state transitions) travels in the record's
``extra`` fields.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kinuxota_executor.config import LoggingConfig

ROOT_LOGGER_NAME = "kinuxota_executor"

# Plain-text format used when JSON output is disabled
DEFAULT_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

_RESERVED_RECORD_KEYS = frozenset(
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


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record carries:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level name
    - logger: Logger name
    - message: Log message
    - any fields passed through ``extra``
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure logging for the executor.

    Args:
        config: Optional LoggingConfig. When given it overrides the keyword
            arguments.
        level: Log level if no config is provided.
        json_format: Whether to emit JSON records.
        log_to_stdout: Whether to attach a stdout handler.

    Returns:
        The package root logger.

    Example:
        >>> from kinuxota_executor.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Executor started", extra={"version": "2.3.0"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers.clear()

    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, log_level, logging.INFO))
        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the executor's root logger.

    Args:
        name: Usually ``__name__`` of the calling module. The
            ``kinuxota_executor.`` prefix is added if missing.

    Returns:
        A logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
