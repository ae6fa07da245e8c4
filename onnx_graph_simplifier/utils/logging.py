"""
Logging utilities for ONNX Graph Simplifier.
"""

import logging
import sys
from typing import Optional

from colorama import Fore, Style
from colorama import just_fix_windows_console

# Configure logging format
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    logging.DEBUG: Style.DIM,
    logging.INFO: "",
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}

# Global logger dictionary
_loggers = {}


class ColorFormatter(logging.Formatter):
    """Formatter that colours the whole record by level."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno, "")
        if not color:
            return message
        return f"{color}{message}{Style.RESET_ALL}"


def setup_logging(level: int = logging.INFO, color: bool = True) -> None:
    """
    Set up logging configuration.

    Only command-line entry points call this; library code just asks for
    loggers and leaves handler setup to the host application.

    Args:
        level: Logging level
        color: Whether to colour console output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Create console handler
    console_handler = logging.StreamHandler(sys.stdout)
    if color:
        just_fix_windows_console()
        console_handler.setFormatter(ColorFormatter(LOG_FORMAT, DATE_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    # Add handler to root logger
    root_logger.handlers = []  # Clear existing handlers
    root_logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    _loggers[name] = logger

    return logger


def set_log_level(level: int) -> None:
    """
    Set log level for all loggers.

    Args:
        level: Logging level
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Update existing loggers
    for logger in _loggers.values():
        logger.setLevel(level)


def add_file_handler(filename: str, level: Optional[int] = None) -> None:
    """
    Add a file handler to the root logger.

    Args:
        filename: Log file path
        level: Logging level for file handler
    """
    root_logger = logging.getLogger()

    file_handler = logging.FileHandler(filename)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    if level is not None:
        file_handler.setLevel(level)

    root_logger.addHandler(file_handler)
