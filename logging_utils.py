"""Logging setup helpers for the slide render pipeline."""
from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str, log_file: Optional[Path] = None) -> Logger:
    """Configure root logger with console + file handlers."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear existing handlers to avoid duplicate logs during repeated runs
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
        logger.addHandler(file_handler)

    logger.debug("Logging configured", extra={"level": level, "file": str(log_file)})
    return logger


class ForwardingHandler(logging.Handler):
    """Ship log records to another process as ``console`` messages."""

    def __init__(self, send: Callable[[Dict[str, Any]], None]) -> None:
        super().__init__()
        self._send = send

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._send(
                {
                    "type": "console",
                    "level": record.levelname,
                    "logger": record.name,
                    "message": self.format(record),
                }
            )
        except (OSError, ValueError):
            self.handleError(record)


def configure_sandbox_logging(level: str, send: Callable[[Dict[str, Any]], None]) -> Logger:
    """Route every record of a sandbox process to the host over ``send``."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = ForwardingHandler(send)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger


def get_logger(name: Optional[str] = None) -> Logger:
    """Return a module-level logger."""
    return logging.getLogger(name)
