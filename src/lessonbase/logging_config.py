"""Logging configuration for lessonbase with log rotation.

All lessonbase components log under the ``lessonbase`` logger namespace.
Log files rotate at 10 MB and five backups are kept, so logs never use more
than roughly 60 MB of disk.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import get_settings

DEFAULT_LOG_FILE = "lessonbase.log"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
DEFAULT_BACKUP_COUNT = 5
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def configure_logging(
    log_dir: Path | str | None = None,
    log_file: str = DEFAULT_LOG_FILE,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    log_level: int | str | None = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    console_output: bool = True,
) -> logging.Logger:
    """Configure lessonbase logging with automatic log rotation.

    Args:
        log_dir: Directory for log files (default: <data dir>/logs)
        log_file: Log file name
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of backup files to keep
        log_level: Logging level (default: LESSONBASE_LOG_LEVEL or INFO)
        log_format: Log message format
        console_output: Also log to stderr. Must be False for the MCP stdio server.

    Returns:
        The root lessonbase logger.
    """
    global _configured

    settings = get_settings()
    log_path = Path(log_dir).expanduser() if log_dir else settings.log_dir
    log_path.mkdir(parents=True, exist_ok=True)
    full_log_path = log_path / log_file

    if log_level is None:
        log_level = settings.log_level
    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger("lessonbase")
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates on reconfiguration
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers.clear()

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

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.propagate = False
    _configured = True

    root_logger.info(
        f"Logging configured: file={full_log_path}, "
        f"max_size={max_bytes // (1024 * 1024)}MB, "
        f"backups={backup_count}"
    )
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a lessonbase component.

    Example:
        logger = get_logger("ingestion")
        logger.info("Batch processed")
        # Logs as: lessonbase.ingestion - INFO - Batch processed
    """
    if not _configured:
        configure_logging(console_output=False)
    return logging.getLogger(f"lessonbase.{name}")
