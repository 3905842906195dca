"""Unit tests for atvbridge._logging — JSON formatter and root config.

Test Techniques Used:
    - Specification-based Testing: JsonFormatter output schema
    - State Inspection: root and debug logger state after configure
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from atvbridge._logging import DEBUG_LOGGERS, JsonFormatter, configure_logging
from atvbridge._settings import LoggingSettings


def make_record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="atvbridge._manager",
        level=logging.WARNING,
        pathname="x.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestJsonFormatter:
    """Technique: Specification-based Testing — one JSON object per line."""

    def test_fields(self) -> None:
        fmt = JsonFormatter(service="atvbridge", version="1.2.3")
        entry = json.loads(fmt.format(make_record("link lost")))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "atvbridge._manager"
        assert entry["message"] == "link lost"
        assert entry["service"] == "atvbridge"
        assert entry["version"] == "1.2.3"
        assert entry["timestamp"].endswith("+00:00")

    def test_version_omitted_when_empty(self) -> None:
        entry = json.loads(JsonFormatter(service="s").format(make_record()))
        assert "version" not in entry

    def test_device_label(self) -> None:
        fmt = JsonFormatter(service="s", device="Living Room")
        entry = json.loads(fmt.format(make_record()))
        assert entry["device"] == "Living Room"
        assert "device" not in json.loads(JsonFormatter().format(make_record()))

    def test_exception_is_single_line(self) -> None:
        record = make_record()
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record.exc_info = sys.exc_info()
        line = JsonFormatter().format(record)
        assert "\n" not in line
        assert "RuntimeError: boom" in json.loads(line)["exception"]


@pytest.mark.usefixtures("_restore_root_logger")
class TestConfigureLogging:
    """Technique: State Inspection — handlers and levels after configure."""

    def test_text_format_by_default(self) -> None:
        configure_logging(LoggingSettings())
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO

    def test_json_format(self) -> None:
        configure_logging(LoggingSettings(format="json", level="ERROR"))
        root = logging.getLogger()
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.ERROR

    def test_replaces_existing_handlers(self) -> None:
        stale = logging.StreamHandler()
        logging.getLogger().addHandler(stale)
        configure_logging(LoggingSettings())
        assert stale not in logging.getLogger().handlers

    def test_rotating_file_handler(self, tmp_path: Path) -> None:
        settings = LoggingSettings(
            file=str(tmp_path / "atvbridge.log"),
            max_file_size_mb=2,
            backup_count=5,
        )
        configure_logging(settings)
        rotating = [
            h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 2 * 1024 * 1024
        assert rotating[0].backupCount == 5

    def test_debug_flag_raises_library_loggers(self) -> None:
        configure_logging(LoggingSettings(level="WARNING"), debug=True)
        for name in DEBUG_LOGGERS:
            assert logging.getLogger(name).level == logging.DEBUG
        assert logging.getLogger().level == logging.WARNING

    def test_debug_off_resets_library_loggers(self) -> None:
        configure_logging(LoggingSettings(), debug=True)
        configure_logging(LoggingSettings(), debug=False)
        assert logging.getLogger("pyatv").level == logging.NOTSET
