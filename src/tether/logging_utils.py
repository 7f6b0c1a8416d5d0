"""Structured JSON logging utilities for event-based logging."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add event-specific fields if present
        if hasattr(record, "event_type"):
            log_data["event_type"] = record.event_type
        if hasattr(record, "event_data"):
            log_data.update(record.event_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", log_file: str | None = None):
    """Configure JSON logging for the application."""
    json_formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(json_formatter)
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(json_formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = handlers

    # Suppress verbose logging from dependencies
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("fluent").setLevel(logging.WARNING)


def _event_data(fields: dict[str, Any]) -> dict[str, Any]:
    """Drop None values so log records only carry what is known."""
    return {key: value for key, value in fields.items() if value is not None}


def log_domain_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **kwargs: Any,
) -> None:
    """
    Log a domain fact (event ingested, session stopped, command completed, ...).

    Args:
        logger: Logger instance
        event: Event name (e.g., "event_ingested", "command_completed")
        level: Logging level (default: INFO)
        **kwargs: Additional fields to include
    """
    extra = {
        "event_type": "domain_event",
        "event_data": {"event": event, **_event_data(kwargs)},
    }
    logger.log(level, event.replace("_", " ").capitalize(), extra=extra)


def log_error(
    logger: logging.Logger,
    error_type: str,
    message: str,
    exc_info: BaseException | None = None,
    **kwargs: Any,
) -> None:
    """
    Log an error event.

    Args:
        logger: Logger instance
        error_type: Type of error (e.g., "operation_error", "plugin_error")
        message: Error message
        exc_info: Exception object (will extract traceback)
        **kwargs: Additional fields to include
    """
    extra = {
        "event_type": "error",
        "event_data": {"error_type": error_type, **_event_data(kwargs)},
    }
    logger.error(message, extra=extra, exc_info=exc_info)
