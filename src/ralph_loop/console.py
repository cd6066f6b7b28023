"""Console logging and colour helpers for the ralph loop."""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOGGER_NAMESPACE = "ralph_loop"

ANSI = {
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "reset": "\033[0m",
}

LEVEL_TAGS = {
    logging.DEBUG: ("DEBUG", "dim"),
    logging.INFO: ("INFO", "blue"),
    SUCCESS: ("OK", "green"),
    logging.WARNING: ("WARN", "yellow"),
    logging.ERROR: ("ERROR", "red"),
    logging.CRITICAL: ("ERROR", "red"),
}


def supports_color(stream: TextIO | None = None) -> bool:
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        return False


def paint(text: str, color: str, enabled: bool) -> str:
    if not enabled or color not in ANSI:
        return text
    return f"{ANSI[color]}{text}{ANSI['reset']}"


class ConsoleFormatter(logging.Formatter):
    """Render records as ``[TAG] message`` with optional colour."""

    def __init__(self, color: bool = False) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        tag, color = LEVEL_TAGS.get(record.levelno, (record.levelname, "reset"))
        message = record.getMessage()
        if record.exc_info and record.levelno >= logging.ERROR:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if record.levelno == logging.DEBUG:
            return paint(f"[{tag}] {message}", color, self.color)
        return f"{paint(f'[{tag}]', color, self.color)} {message}"


class _BelowError(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def configure_logging(
    verbose: bool = False,
    *,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> logging.Logger:
    """Install console handlers on the package logger.

    Records below ERROR go to stdout, errors to stderr. Calling it again
    replaces the handlers installed previously.
    """
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    logger = logging.getLogger(LOGGER_NAMESPACE)
    for handler in list(logger.handlers):
        if getattr(handler, "_ralph_console", False):
            logger.removeHandler(handler)

    out_handler = logging.StreamHandler(stdout)
    out_handler.addFilter(_BelowError())
    out_handler.setFormatter(ConsoleFormatter(color=supports_color(stdout)))
    err_handler = logging.StreamHandler(stderr)
    err_handler.setLevel(logging.ERROR)
    err_handler.setFormatter(ConsoleFormatter(color=supports_color(stderr)))
    for handler in (out_handler, err_handler):
        handler._ralph_console = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    return logger


def log_success(logger: logging.Logger, msg: str, *args: object) -> None:
    logger.log(SUCCESS, msg, *args)
