"""
Centralized logging setup for the edge certificate renewal service.

All modules share one StructuredLogger obtained through get_logger().
"""

import logging
import os
import sys
from typing import Optional


DEFAULT_LOGGER_NAME = "EdgeCertRenewal"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors the level name (and warning/error messages).

    Colors are only applied when stdout is a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str = None, use_colors: bool = True):
        super().__init__(fmt or DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        original_levelname = record.levelname
        original_msg = record.msg

        color = self.COLORS.get(record.levelname, "")
        reset = self.COLORS["RESET"]
        record.levelname = f"{color}{record.levelname}{reset}"
        if original_levelname in ("WARNING", "ERROR", "CRITICAL"):
            record.msg = f"{color}{record.msg}{reset}"

        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname
            record.msg = original_msg


class StructuredLogger(logging.Logger):
    """Logger with a few helpers for sectioned run output."""

    def section(self, title: str) -> None:
        self.info("=" * 60)
        self.info(title)
        self.info("=" * 60)

    def subsection(self, title: str) -> None:
        self.info(f"--- {title} ---")

    def success(self, message: str) -> None:
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        self.error(f"[FAIL] {message}")


_logger: Optional[StructuredLogger] = None


def _resolve_level(verbose: bool) -> int:
    """
    Pick the log level.

    --verbose wins; otherwise LOG_LEVEL from the environment is honoured
    (e.g. LOG_LEVEL=debug), falling back to INFO.
    """
    if verbose:
        return logging.DEBUG

    env_level = os.environ.get("LOG_LEVEL", "").upper()
    level = logging.getLevelName(env_level) if env_level else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    verbose: bool = False,
    use_colors: bool = True,
    log_file: Optional[str] = None,
) -> StructuredLogger:
    """
    Setup and configure the global logger.

    Args:
        name: Logger name
        verbose: Enable debug-level logging
        use_colors: Enable colored console output
        log_file: Optional file path for additional plain-text output

    Returns:
        Configured StructuredLogger instance
    """
    global _logger

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger

    level = _resolve_level(verbose)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT))
        logger.addHandler(file_handler)

    _logger = logger
    return logger


def get_logger() -> StructuredLogger:
    """
    Get the global logger instance, creating a default one on first use.
    """
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger
