"""Configure loguru sinks for the watcher, the workers and the CLI."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .paths import app_logs_dir

_STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process} | {name}:{line} | {message}"


def configure_logging(
    level: str = "INFO",
    name: Optional[str] = None,
    *,
    log_dir: Optional[Path] = None,
    stderr: bool = True,
) -> Optional[Path]:
    """Reset loguru to a stderr sink plus an optional daily file sink.

    Args:
        level: Minimum level for every sink.
        name: Log file prefix (``watcher``, ``executor``...); no file sink
            when omitted.
        log_dir: Directory for the file sink; the app logs dir by default.
        stderr: Whether to keep the colored stderr sink.

    Returns:
        The file sink's path pattern, or ``None`` without a file sink.
    """
    logger.remove()
    if stderr:
        logger.add(sys.stderr, level=level.upper(), format=_STDERR_FORMAT)
    if not name:
        return None
    directory = log_dir or app_logs_dir()
    directory.mkdir(parents=True, exist_ok=True)
    pattern = directory / f"{name}_{{time:YYYY-MM-DD}}.log"
    logger.add(
        str(pattern),
        level=level.upper(),
        format=_FILE_FORMAT,
        rotation="00:00",
        retention="14 days",
        enqueue=True,
        encoding="utf-8",
    )
    return pattern
