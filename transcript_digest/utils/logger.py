"""Loguru sinks for digest runs."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logger(log_level: str = "INFO", log_file: Optional[str] = "logs/digest.log") -> None:
    """
    Replace loguru's default handler with the digest sinks.

    The console shows `log_level` and above. The run log file, when given,
    always records DEBUG so per-chunk sizes and retry attempts can be read
    back after a failed run. Tracebacks in the file omit local variables,
    which would otherwise copy transcript content into the log.
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
            diagnose=False,
        )

    logger.debug(f"[Logger] console={log_level.upper()} | run log={log_file or 'disabled'}")
