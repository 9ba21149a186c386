"""Loguru sink configuration for the client runtime.

Modules log through ``from loguru import logger``; this module only decides
where records go.
"""

from __future__ import annotations

from pathlib import Path
import sys

from loguru import logger

LOG_FILENAME = "traverse.log"
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    *,
    file_level: str = "DEBUG",
) -> Path | None:
    """
    Route records to stderr and, when ``log_dir`` is given, to a rotating file.

    Args:
        level: Console log level
        log_dir: Directory for ``traverse.log``; console only when None
        file_level: Log level for the file sink

    Returns:
        Path to the log file, or None when no file sink was added
    """
    setup_console_only(level)
    if log_dir is None:
        return None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(f"Logging to console only; cannot create {log_dir}: {exc}")
        return None
    log_file = log_dir / LOG_FILENAME
    logger.add(
        log_file,
        level=file_level,
        format=FILE_FORMAT,
        rotation="5 MB",
        retention="7 days",
        encoding="utf-8",
        enqueue=True,
    )
    return log_file


def setup_console_only(level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=CONSOLE_FORMAT,
        colorize=True,
    )
