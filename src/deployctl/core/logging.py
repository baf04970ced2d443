"""Logging for deployctl: Rich on a terminal, plain lines otherwise."""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

# Context keys shown first, so lines from one run read left to right
LEADING_KEYS = ("run_id", "stage", "target")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


def setup_logging(level: LogLevel = LogLevel.WARNING, rich_output: bool = True) -> logging.Logger:
    """Send deployctl logs to stderr, replacing any earlier handler.

    Args:
        level: The logging level
        rich_output: Render through Rich; plain timestamped lines when off

    Returns:
        The ``deployctl`` logger
    """
    log_level = getattr(logging, level.value.upper())

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if rich_output:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )

    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    logger = logging.getLogger("deployctl")
    logger.setLevel(log_level)

    # One line per health poll otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    if name.startswith("deployctl"):
        return logging.getLogger(name)
    return logging.getLogger(f"deployctl.{name}")


class StructuredLogger:
    """Logger that appends bound ``key=value`` context to every message.

    ``bind`` returns a new logger, so a stage can bind its name and target once
    and hand the result down without affecting the module-level logger.
    """

    def __init__(self, name: str):
        self._logger = get_logger(name)
        self._context: dict[str, Any] = {}

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        new_logger = StructuredLogger(self._logger.name)
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def _format_message(self, message: str, **kwargs: Any) -> str:
        context = {**self._context, **kwargs}
        if not context:
            return message
        keys = [k for k in LEADING_KEYS if k in context]
        keys += [k for k in context if k not in LEADING_KEYS]
        pairs = " ".join(f"{k}={context[k]}" for k in keys)
        return f"{message} [{pairs}]"

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(self._format_message(message, **kwargs))
