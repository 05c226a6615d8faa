"""Logging utilities for caravan.

This module provides:
- Console and file logging configuration
- Verbosity levels, including a TRACE level for raw channel traffic
- Log scoping and performance timing context managers
- A structured logger that appends key=value context to messages
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Custom TRACE level (raw channel chunks, sent prompt responses)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,   # Default: warnings and errors only
    1: logging.INFO,      # -v: task progress
    2: logging.DEBUG,     # -vv: commands and connections
    3: TRACE,             # -vvv: raw channel chunks
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert level name to logging level.

    Args:
        level_name: Level name (trace, debug, info, warning, error, critical)

    Returns:
        Logging level constant

    Raises:
        ValueError: If level name is invalid
    """
    level_map = {
        "trace": TRACE,
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }
    level_lower = level_name.lower()
    if level_lower not in level_map:
        valid = ", ".join(level_map.keys())
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level_map[level_lower]


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure the root logger for a caravan run.

    Args:
        level: Logging level for the console
        format_string: Custom format string (uses default if None)
        debug: If True, use debug format with timestamps and line numbers
        log_file: Optional path to also write logs to
        file_level: Optional separate level for file logging (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="deploy.log", file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif debug or level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file) if isinstance(log_file, str) else log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        # Deploy logs are read after the fact, always keep timestamps
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)


@contextmanager
def log_scope(
    logger: logging.Logger,
    message: str,
    level: int = logging.INFO,
    **context: Any,
) -> Generator[None, None, None]:
    """Log entry and exit of a scope with optional context data.

    Example:
        >>> with log_scope(logger, "executing task", task="deploy"):
        ...     pass
        INFO: Entering: executing task (task=deploy)
        INFO: Exiting: executing task (task=deploy)
    """
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    full_message = f"{message} ({context_str})" if context else message

    logger.log(level, f"Entering: {full_message}")
    try:
        yield
    finally:
        logger.log(level, f"Exiting: {full_message}")


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log its duration.

    Args:
        logger: Logger instance to use
        operation: Description of the operation being timed
        level: Log level to use
        threshold: Only log if duration exceeds this threshold (seconds)
        **context: Additional context to include in logs
    """
    start_time = time.perf_counter()
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())

    try:
        yield
    finally:
        duration = time.perf_counter() - start_time

        if threshold is None or duration >= threshold:
            full_message = f"{operation} completed in {duration:.3f}s"
            if context:
                full_message += f" ({context_str})"
            logger.log(level, full_message)


class StructuredLogger:
    """Logger that appends default key=value context to every message.

    Example:
        >>> logger = StructuredLogger("caravan.cli", task="deploy")
        >>> logger.info("starting")
        INFO [caravan.cli] starting (task=deploy)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = context.copy()

    def _format_message(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}

        if not combined:
            return message

        context_str = ", ".join(f"{k}={v}" for k, v in combined.items())
        return f"{message} ({context_str})"

    def info(self, message: str, **extra: Any) -> None:
        self.logger.info(self._format_message(message, **extra))

    def error(self, message: str, **extra: Any) -> None:
        self.logger.error(self._format_message(message, **extra))


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a structured logger for ``name`` with initial context."""
    return StructuredLogger(name, **context)
