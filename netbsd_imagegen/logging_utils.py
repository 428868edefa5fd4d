"""Logging setup for the nbimagegen CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_HANDLER_MARKER = "_nbimagegen_handler"


def configure_logging(level: int = logging.WARNING, log_path: Path | None = None) -> None:
    """Configure root logging for a CLI run.

    The console handler writes to stderr at ``level``. When ``log_path`` is
    given, a file handler records everything at DEBUG so a failed build can
    be diagnosed after the fact. Calling this again replaces the handlers
    installed by a previous call.

    Args:
        level: Console logging level.
        log_path: Optional log file.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(fmt)
    handlers.append(console)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)

    root.setLevel(logging.DEBUG if log_path is not None else level)
    logging.getLogger(__name__).debug(
        "Logging initialized (level=%s, file=%s)", logging.getLevelName(level), log_path
    )


__all__ = ["configure_logging"]
