"""Simple logging utilities for microbiome ASV workflows."""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO") -> None:
    """Setup basic logging configuration."""
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
    )
    # Console stays at the requested level even when a DEBUG file handler
    # lowers the package logger level later on
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers:
        handler.setLevel(numeric_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (defaults to package name)

    Returns:
        Logger instance
    """
    if name is None:
        name = __name__.split(".")[0]

    logger = logging.getLogger(name)

    # If no handlers, setup basic logging
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False

    return logger


def add_file_handler(
    log_file: Union[str, Path], level: str = "DEBUG"
) -> logging.Handler:
    """Attach a file handler to the package logger.

    The file receives DEBUG+ records from every module logger under the
    package namespace. The handler is returned so callers can remove it when
    a run finishes.

    Args:
        log_file: Destination log file (parent directories are created)
        level: Minimum level written to the file

    Returns:
        The installed handler
    """
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    package_logger = logging.getLogger(__name__.split(".")[0])
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > handler.level:
        package_logger.setLevel(handler.level)
    return handler


def log_section(logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info(sep)
    logger.info("== %s ==", title)
    logger.info(sep)
