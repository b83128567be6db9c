"""Logger setup - console and rotating JSON file logging.

Every module logs through ``logging.getLogger(__name__)``; this module only
configures where those records go.
"""

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from logging_module.config import LoggingConfig

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    [
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
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    ]
)

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Formats log records as JSON with timestamp, level, message, and extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted string
        """
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add all custom extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    logger_name: Optional[str] = None,
) -> logging.Logger:
    """Configure console and rotating JSON file handlers.

    Args:
        config: Logging configuration (loaded from env if not provided)
        logger_name: Logger to configure (root logger if not provided)

    Returns:
        The configured logger

    Raises:
        ValueError: If configuration is invalid
    """
    if config is None:
        config = LoggingConfig.from_env()
    config.validate()

    level = getattr(logging, config.effective_level)
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.handlers.clear()  # Remove any existing handlers

    # Console handler (stdout)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if config.json_console:
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    # Rotating file handler (JSON format)
    try:
        os.makedirs(config.log_path, exist_ok=True)
        log_file = os.path.join(config.log_path, config.log_file_name)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=config.log_file_max_bytes,
            backupCount=config.log_file_backup_count,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Could not create log file: {e}. Logging to console only.")

    logger.debug(
        "Logging configured",
        extra={"log_path": config.log_path, "log_level": config.effective_level},
    )
    return logger
