"""
Logging utilities for the climate insight services.

Centralised console/file logging setup plus helpers that log an exception with
its traceback and context in one place.
"""

import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the ROOT logger so every module-level logger inherits the handlers.

    Args:
        level: Console log level name
        log_file: Optional path for a DEBUG-level file log

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers on Streamlit reruns
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    return logging.getLogger("climate_insight")


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    context: str = "",
    level: int = logging.ERROR,
    **kwargs: Any,
) -> None:
    """
    Log an exception with its traceback and any context key-value pairs.

    Args:
        logger: Logger instance to use
        exc: Exception that was raised
        context: Short description of what was being attempted
        level: Log level for the summary line
        **kwargs: Additional context
    """
    error_msg = f"Exception occurred: {type(exc).__name__}: {exc}"
    if context:
        error_msg = f"{context} - {error_msg}"
    logger.log(level, error_msg)

    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.debug(f"Traceback:\n{tb_str}")

    if kwargs:
        logger.log(level, f"Context: {kwargs}")


def get_error_info(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Structured, JSON-safe description of an exception."""
    return {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "timestamp": datetime.now().isoformat(),
        "context": context or {},
    }
