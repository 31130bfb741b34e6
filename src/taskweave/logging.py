"""Logging utilities for taskweave.

Provides:
- Console/file logging configuration with verbosity levels
- A custom TRACE level below DEBUG
- Performance timing of plays and runs
- A structured logger that appends key=value context to messages
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from rich.logging import RichHandler

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If the level name is invalid
    """
    level = LEVEL_NAMES.get(level_name.lower())
    if level is None:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    log_file: str | Path | None = None,
    file_level: int | None = None,
    rich_console: bool = False,
) -> None:
    """Configure root logging for a taskweave process.

    Args:
        level: Console logging level
        format_string: Custom console format (chosen from level if None)
        log_file: Optional path to also write logs to
        file_level: Separate level for the file handler (defaults to level)
        rich_console: Render console records with rich instead of plain text

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/tw.log", file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler: logging.Handler
    if rich_console:
        console_handler = RichHandler(show_path=level <= logging.DEBUG, markup=False)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(format_string))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)


def _format_context(context: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items())


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log its duration.

    Example:
        >>> with log_performance(logger, "Play 'deploy'", hosts=3):
        ...     ...
        INFO: Play 'deploy' completed in 1.204s (hosts=3)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if threshold is None or duration >= threshold:
            message = f"{operation} completed in {duration:.3f}s"
            if context:
                message += f" ({_format_context(context)})"
            logger.log(level, message)


class StructuredLogger:
    """Logger that appends structured context to every message.

    Example:
        >>> logger = StructuredLogger("taskweave.executor", play="deploy")
        >>> logger.info("Host finished", host="web01")
        INFO [taskweave.executor] Host finished (play=deploy, host=web01)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = dict(context)

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a new logger with additional context."""
        return StructuredLogger(self.logger.name, **{**self.context, **context})

    def _format_message(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}
        if not combined:
            return message
        return f"{message} ({_format_context(combined)})"

    def trace(self, message: str, **extra: Any) -> None:
        self.logger.log(TRACE, self._format_message(message, **extra))

    def debug(self, message: str, **extra: Any) -> None:
        self.logger.debug(self._format_message(message, **extra))

    def info(self, message: str, **extra: Any) -> None:
        self.logger.info(self._format_message(message, **extra))

    def warning(self, message: str, **extra: Any) -> None:
        self.logger.warning(self._format_message(message, **extra))

    def error(self, message: str, **extra: Any) -> None:
        self.logger.error(self._format_message(message, **extra))

    def exception(self, message: str, **extra: Any) -> None:
        """Log an error with the active exception's traceback."""
        self.logger.exception(self._format_message(message, **extra))


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a structured logger."""
    return StructuredLogger(name, **context)
