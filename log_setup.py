"""Logging utilities."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MODULE_LOGGERS = (
    "stress_loadtest",
    "runner",
    "loadgen",
    "prefill",
    "throughput",
    "completion_client",
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_str: str = LOG_FORMAT,
) -> logging.Logger:
    """Send the tool's module loggers to stdout and, optionally, a file."""
    formatter = logging.Formatter(format_str)
    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for name in MODULE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        for old_handler in logger.handlers:
            old_handler.close()
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False

    return logging.getLogger("stress_loadtest")
