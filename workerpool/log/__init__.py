"""
Logging module for the application.
This module provides functionality to set up logging and to feed the
supervisor's log callback into a standard logger.
"""
import logging
from typing import Callable

from .setup import setup_logging


def logger_callback(name: str = "workerpool", level: int = logging.INFO) -> Callable[[str], None]:
    """Returns a log callback for `Supervisor` that writes to the named logger."""
    logger = logging.getLogger(name)

    def _log(message: str) -> None:
        logger.log(level, message)

    return _log


__all__ = ["setup_logging", "logger_callback"]
