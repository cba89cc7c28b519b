"""Logging setup for the installer back-end."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# journald stamps every line itself
JOURNAL_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def parse_level(level: Union[int, str]) -> int:
    """Turn a level name from the settings file (e.g. "DEBUG") into a logging level.

    Raises:
        ValueError: If the name is not a known level
    """
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logger(
    name: str = "installer",
    log_file: str = "/var/log/installer/installer.log",
    level: Union[int, str] = "INFO",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the service logger: rotating file plus stderr.

    Component loggers (installer.orchestrator, installer.auth, ...) propagate
    here. When started by systemd (JOURNAL_STREAM set) the stderr handler
    drops its timestamp, since the journal records one per line.

    Args:
        name: Logger name
        log_file: Path to log file (parent directory created if missing)
        level: Level name as in the settings file, or a logging constant
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    numeric_level = parse_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    if logger.handlers:
        # Reconfiguring an existing logger only adjusts its level
        for handler in logger.handlers:
            handler.setLevel(numeric_level)
        return logger

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    stream_handler = logging.StreamHandler(sys.stderr)
    if os.environ.get("JOURNAL_STREAM"):
        stream_handler.setFormatter(logging.Formatter(JOURNAL_FORMAT))
    else:
        stream_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    for handler in (file_handler, stream_handler):
        handler.setLevel(numeric_level)
        logger.addHandler(handler)
    return logger
