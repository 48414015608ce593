"""Structured JSON logging configuration."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shared.config import get_settings

# Record attributes copied into the JSON payload when a caller passes them via extra=
CONTEXT_FIELDS = (
    "booking_id",
    "notification_id",
    "service_id",
    "client_id",
    "channel",
    "trace_id",
)


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs logs as JSON with consistent fields:
    - timestamp (ISO 8601)
    - level (INFO, ERROR, etc.)
    - logger (module name)
    - message
    - component (when the formatter was given one)
    - booking_id, notification_id, service_id, client_id, channel, trace_id
      (if available in extra)
    """

    def __init__(self, component: str | None = None):
        super().__init__()
        self.component = component

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON string.

        Args:
            record: Python log record

        Returns:
            JSON-formatted log string
        """
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.component:
            log_data["component"] = self.component

        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = str(getattr(record, field_name))

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def configure_logging(component: str | None = None) -> None:
    """
    Install the JSON handler on the root logger.

    Args:
        component: Process name stamped on every record (e.g. "retry_worker"),
            so logs of several engine processes can be told apart

    Reads LOG_LEVEL from settings (default: INFO). SQLAlchemy engine logs are
    held at WARNING unless DB_ECHO is set.
    """
    settings = get_settings()

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(JSONFormatter(component=component))

    root_logger.addHandler(console_handler)

    if not settings.DB_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging configured: level={settings.LOG_LEVEL}, format=JSON, "
        f"component={component or '-'}"
    )
