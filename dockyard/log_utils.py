"""The package logger and helpers for echoing container output into it.

Importing ``logger`` from here is enough: sinks are installed on first import
from the ``DOCKYARD_LOG_LEVEL`` and ``DOCKYARD_LOG_FILE`` settings.
"""

from __future__ import annotations

from pathlib import Path
import re
from re import Pattern
from typing import Any

from loguru import logger
from rich.logging import RichHandler
from rich.markup import escape

from dockyard.config import LoggingSettings, get_settings


FILE_SINK_LEVEL = "DEBUG"
FILE_SINK_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{line} | {message}"
FILE_SINK_ROTATION = "10 MB"
FILE_SINK_RETENTION = 3

ANSI_ESCAPE_RE: Pattern[str] = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

_sink_ids: list[int] = []


def configure_logging(settings: LoggingSettings | None = None, *, force: bool = False) -> None:
    """Install the console sink and, when a log file is configured, a file sink.

    Calling it again is a no-op unless ``force`` is set, in which case the
    sinks installed earlier are replaced.
    """
    if _sink_ids and not force:
        return
    settings = settings or get_settings().logging

    logger.remove()
    _sink_ids.clear()

    console: Any = RichHandler(markup=True, show_time=False, show_path=False)
    _sink_ids.append(logger.add(console, level=settings.level, format="{message}"))

    if settings.file_path:
        path = Path(settings.file_path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        _sink_ids.append(
            logger.add(
                str(path),
                level=FILE_SINK_LEVEL,
                format=FILE_SINK_FORMAT,
                rotation=FILE_SINK_ROTATION,
                retention=FILE_SINK_RETENTION,
                enqueue=True,
            )
        )


def container_prefix(name: str | None, container_id: str | None) -> str:
    """``[name]`` for a named container, ``[<short id>]`` otherwise, ``""`` for neither."""
    label = (name or "").lstrip("/") or (container_id or "")[:12]
    return f"[{label}]" if label else ""


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def log_multiline(text: str, prefix: str | None = None, level: str = "info") -> None:
    """Log each line of container output as its own record.

    Colour codes and carriage returns are removed and both the prefix and the
    line are escaped, so output such as ``[ok]`` is not read as Rich markup.
    """
    if not text:
        return
    head = f"{escape(prefix.strip())} " if prefix and prefix.strip() else ""
    emit = getattr(logger, level, logger.info)
    for line in text.splitlines():
        emit(head + escape(strip_ansi(line).replace("\r", "")))


configure_logging()


__all__ = ["configure_logging", "container_prefix", "log_multiline", "logger", "strip_ansi"]
