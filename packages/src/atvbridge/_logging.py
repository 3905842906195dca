"""Log formatting and root-logger configuration for the bridge.

Two output formats are supported:

- ``text`` — ``2026-10-19 12:00:00,000 [INFO] atvbridge._manager: ...``
  for terminals and ``journalctl``.
- ``json`` — one JSON object per line (NDJSON) for container log
  drivers; see :class:`JsonFormatter`.

The device ``debug`` flag raises the ``atvbridge`` and ``pyatv`` loggers
to DEBUG without touching the root level, so protocol chatter can be
inspected while other libraries stay quiet.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from atvbridge._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEBUG_LOGGERS = ("atvbridge", "pyatv")


class JsonFormatter(logging.Formatter):
    """Render each record as one NDJSON line.

    Every line carries ``timestamp`` (UTC), ``level``, ``logger``,
    ``message`` and ``service``.  ``version`` and ``device`` are added
    when configured, ``exception`` / ``stack_info`` when the record has
    them.
    """

    def __init__(self, *, service: str = "", version: str = "", device: str = "") -> None:
        super().__init__()
        self._static = {
            key: value
            for key, value in (("service", service), ("version", version), ("device", device))
            if value or key == "service"
        }

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        line: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            line["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(line, default=str)


def _build_handlers(settings: LoggingSettings) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        handlers.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=settings.max_file_size_mb * _MEGABYTE,
                backupCount=settings.backup_count,
            ),
        )
    return handlers


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str = "atvbridge",
    version: str = "",
    device: str = "",
    debug: bool = False,
) -> None:
    """Replace the root logger's handlers according to *settings*.

    Logs always go to stderr; ``settings.file`` adds a size-rotated file.

    Args:
        settings: Level, format and optional file sink.
        service: ``service`` field of JSON lines.
        version: ``version`` field of JSON lines (omitted when empty).
        device: ``device`` field of JSON lines (omitted when empty).
        debug: Raise :data:`DEBUG_LOGGERS` to DEBUG; ``False`` resets them.
    """
    formatter: logging.Formatter
    if settings.format == "json":
        formatter = JsonFormatter(service=service, version=version, device=device)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    for handler in _build_handlers(settings):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(settings.level)

    level = logging.DEBUG if debug else logging.NOTSET
    for name in DEBUG_LOGGERS:
        logging.getLogger(name).setLevel(level)
