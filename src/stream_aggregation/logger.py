"""
Logging configuration for stream aggregation.

Uses loguru with a console sink and a rotating file sink. Polling callbacks
log from worker threads, so the file sink is enqueued.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

from stream_aggregation.config import LoggingConfig, get_config


def setup_logger(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    rotation: Optional[str] = None,
    retention: Optional[str] = None,
    format: Optional[str] = None,
    log_config: Optional[LoggingConfig] = None,
) -> None:
    """Configure the logger with file and console handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, etc.)
        log_file: Path to log file
        rotation: Log rotation setting (e.g., "100 MB", "1 day")
        retention: Log retention setting (e.g., "30 days", "1 week")
        format: Log format string
        log_config: Logging section to use instead of the global configuration
    """
    log_config = log_config or get_config().logging

    level = level or log_config.level
    log_file = log_file or log_config.file_path
    rotation = rotation or log_config.rotation
    retention = retention or log_config.retention
    format = format or log_config.format

    _logger.remove()
    # Records logged outside a poller have no source
    _logger.configure(extra={"source_id": "-"})

    if log_config.console_enabled:
        _logger.add(
            sys.stderr,
            format=format,
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

    if log_config.file_enabled:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        _logger.add(
            log_file,
            format=format,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            encoding="utf-8",
            enqueue=True,  # Thread-safe logging
            backtrace=True,
            diagnose=True,
        )


def get_logger(name: Optional[str] = None, **context):
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__ from calling module)
        **context: Extra fields bound to every record, e.g. source_id

    Returns:
        Logger instance
    """
    if name:
        context["name"] = name
    if context:
        return _logger.bind(**context)
    return _logger


logger = _logger

__all__ = [
    "setup_logger",
    "get_logger",
    "logger",
]
