"""Logging configuration for FlowDoc with log rotation.

The server speaks JSON-RPC on stdout, so nothing may be logged there while it is
serving. All components log through the ``flowdoc`` logger, which writes to a
rotating file and optionally to stderr.

Log Rotation Policy:
- Max file size: 10 MB per log file
- Backup count: 5 (keeps flowdoc.log, flowdoc.log.1, ..., flowdoc.log.5)
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_DIR = "~/.flowdoc/logs"
DEFAULT_LOG_FILE = "flowdoc.log"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
DEFAULT_BACKUP_COUNT = 5
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def configure_logging(
    log_dir: str | Path = DEFAULT_LOG_DIR,
    log_file: str = DEFAULT_LOG_FILE,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    log_level: int | str = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    stderr_output: bool = False,
) -> logging.Logger:
    """Configure FlowDoc logging with automatic log rotation.

    Args:
        log_dir: Directory for log files (default: ~/.flowdoc/logs)
        log_file: Log file name (default: flowdoc.log)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of backup files to keep (default: 5)
        log_level: Logging level, as an int or a level name (default: INFO)
        log_format: Log message format
        stderr_output: Whether to also log to stderr (default: False)

    Returns:
        The root flowdoc logger instance.
    """
    global _configured

    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper())

    log_path = Path(os.path.expanduser(str(log_dir)))
    log_path.mkdir(parents=True, exist_ok=True)
    full_log_path = log_path / log_file

    root_logger = logging.getLogger("flowdoc")
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates on reconfiguration
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format)

    file_handler = RotatingFileHandler(
        full_log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Never stdout: that stream carries protocol frames
    if stderr_output:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(log_level)
        stderr_handler.setFormatter(formatter)
        root_logger.addHandler(stderr_handler)

    root_logger.propagate = False

    _configured = True

    root_logger.info(
        f"Logging configured: file={full_log_path}, "
        f"max_size={max_bytes // (1024*1024)}MB, "
        f"backups={backup_count}"
    )

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a FlowDoc component.

    Args:
        name: Component name (e.g., 'persistence', 'dispatcher', 'validator')

    Returns:
        A logger instance under the flowdoc namespace.
    """
    return logging.getLogger(f"flowdoc.{name}")


def is_configured() -> bool:
    return _configured


def set_log_level(level: int | str) -> None:
    """Change the log level for all FlowDoc loggers.

    Args:
        level: Logging level (e.g., logging.DEBUG, "DEBUG", logging.WARNING)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    root_logger = logging.getLogger("flowdoc")
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
