"""
Logging configuration using Loguru.
Provides console and rotating file outputs shared by every module.
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger


def _line_format(record) -> str:
    """Render one log line; the user id is appended when bound."""
    timestamp = record["time"].strftime("%Y-%m-%d %H:%M:%S")
    user_id = record["extra"].get("user_id")
    context = f" [user={user_id}]" if user_id else ""
    return (
        f"{timestamp} | {record['level'].name: <8} | "
        f"{record['name']}:{record['function']}:{record['line']}{context} - {{message}}\n{{exception}}"
    )


def setup_logger(
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    enqueue: bool = True,
) -> None:
    """
    Configure the application logger with file and console outputs.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for log files. If None, only console logging is used.
        rotation: Log rotation size/time (e.g., "10 MB", "1 day").
        retention: How long to keep old log files.
        enqueue: Route records through a queue so worker threads never block on sinks.
    """
    logger.remove()

    logger.add(
        sys.stdout,
        level=log_level,
        format=_line_format,
        colorize=False,
        enqueue=enqueue,
    )

    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y-%m-%d")

        logger.add(
            str(log_dir / f"mailbrief_{date_str}.log"),
            level=log_level,
            format=_line_format,
            rotation=rotation,
            retention=retention,
            compression="zip",
            encoding="utf-8",
            enqueue=enqueue,
        )

        # Separate error log file
        logger.add(
            str(log_dir / f"mailbrief_errors_{date_str}.log"),
            level="ERROR",
            format=_line_format,
            rotation=rotation,
            retention=retention,
            compression="zip",
            encoding="utf-8",
            enqueue=enqueue,
        )

    logger.debug(f"Logger initialized with level: {log_level}")


def get_logger(name: str = "mailbrief", **context):
    """
    Get a logger instance with contextual information.

    Args:
        name: Logger name (usually module name).
        **context: Extra fields bound to every record (e.g. user_id).

    Returns:
        Logger instance with bound context.
    """
    return logger.bind(name=name, **context)
