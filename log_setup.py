"""Logging for the baud rate detector.

Records go to stderr next to the serial echo, and optionally to a
JSON-lines file given with ``--log-file``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Optional

ROOT = "baudrate"
ENV_LEVEL = "BAUDRATE_LOG_LEVEL"
ENV_DEBUG = "BAUDRATE_DEBUG"

# Session fields passed through ``extra=``.
SESSION_FIELDS = ("port", "baud", "index", "cycle_count", "error_code")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in SESSION_FIELDS if hasattr(record, key)})
        if record.exc_info:
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    COLORS = {"DEBUG": "36", "INFO": "32", "WARNING": "33", "ERROR": "31", "CRITICAL": "35"}

    def __init__(self, color: bool) -> None:
        super().__init__("[%(asctime)s] %(levelname)s [%(name)s] %(message)s", "%H:%M:%S")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if self.color:
            code = self.COLORS.get(record.levelname, "0")
            text = f"\033[{code}m{text}\033[0m"
        return text


def _level_from_env() -> str:
    if os.environ.get(ENV_DEBUG, "").strip().lower() in ("1", "true", "yes"):
        return "DEBUG"
    return os.environ.get(ENV_LEVEL, "WARNING")


def configure_logging(*, level: Optional[str] = None, json_file: Optional[str] = None) -> None:
    """Install the stderr handler, plus a JSON file handler when asked.

    Without an explicit level the environment decides, defaulting to
    WARNING. Calling it again replaces the handlers.
    """
    numeric = getattr(logging, (level or _level_from_env()).upper(), logging.WARNING)
    logger = logging.getLogger(ROOT)
    logger.setLevel(numeric)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if json_file:
        try:
            file_handler = logging.FileHandler(json_file, encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open log file %s: %s", json_file, exc)
        else:
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Return ``name`` as a child of the ``baudrate`` logger."""
    if name == "__main__":
        name = "main"
    if name != ROOT and not name.startswith(ROOT + "."):
        name = f"{ROOT}.{name}"
    return logging.getLogger(name)
