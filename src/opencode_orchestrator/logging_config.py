"""Structured logging shared by the server and the terminal client."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Final


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = record_extras(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human readable lines with ``key=value`` context appended."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_extras(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


def configure_logging(level: str | None = None, *, fmt: str | None = None) -> None:
    """Install a single stderr handler on the root logger.

    ``level`` falls back to ``LOG_LEVEL`` then ``INFO``; ``fmt`` to
    ``LOG_FORMAT`` then ``json``.  Calling it again replaces the handler.
    """

    log_level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    style = (fmt or os.environ.get("LOG_FORMAT") or "json").lower()

    handler = logging.StreamHandler()
    handler.setFormatter(TextFormatter() if style == "text" else JsonFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    # Third-party loggers stay quieter unless asked otherwise.
    logging.getLogger("uvicorn.access").setLevel(os.environ.get("UVICORN_ACCESS_LOG_LEVEL", "WARNING"))
    logging.getLogger("httpx").setLevel(os.environ.get("HTTPX_LOG_LEVEL", "WARNING"))
    logging.getLogger("httpcore").setLevel(os.environ.get("HTTPX_LOG_LEVEL", "WARNING"))


__all__ = ["JsonFormatter", "TextFormatter", "configure_logging", "record_extras"]
