"""Logging Module for the stream supervisor.

Sets up console and structured JSON file logging for the supervisor and
its control API.

Main Components:
    - setup_logging: Configure handlers on the root (or a named) logger
    - JsonFormatter: Structured JSON log records
    - LoggingConfig: Configuration management

Example:
    >>> from logging_module import LoggingConfig, setup_logging
    >>> setup_logging(LoggingConfig.from_env())
"""

from logging_module.config import LoggingConfig
from logging_module.logger import JsonFormatter, setup_logging

__version__ = "1.0.0"
__all__ = ["LoggingConfig", "JsonFormatter", "setup_logging"]
