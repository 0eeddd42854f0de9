"""
Logging for the AMP sanitizer.

All output goes through the "amp_sanitizer" logger, which gets a stdout
handler at import time.  Each stage logs through a child logger
("amp_sanitizer.style_sanitizer", "amp_sanitizer.response_cache", ...), so
the stage that dropped an element or tripped the cache breaker is named on
every line.

Preparers and the CLI may call setup_logger() many times in one process:
later calls only retune the level and attach log files not seen before.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _log_files(logger: logging.Logger) -> set:
    return {
        Path(handler.baseFilename).resolve()
        for handler in logger.handlers
        if isinstance(handler, logging.FileHandler)
    }


def setup_logger(
    name: str = "amp_sanitizer",
    level: int = logging.INFO,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the package logger and return it.

    Args:
        name: Logger name
        level: Level applied to the logger and all of its handlers
        log_file: Also write to this file (attached once per path)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file and Path(log_file).resolve() not in _log_files(logger):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for handler in logger.handlers:
        handler.setLevel(level)
    return logger


logger = setup_logger()


def get_module_logger(module_name: str) -> logging.Logger:
    """Child logger for one stage, e.g. get_module_logger("document")."""
    return logging.getLogger(f"amp_sanitizer.{module_name}")
