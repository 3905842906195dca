"""Pytest configuration and shared fixtures."""

import logging
from collections.abc import Iterator

import pytest

# The atvbridge testing plugin is registered via a ``pytest11`` entry
# point for external consumers.  Our own suite disables it
# (``-p no:atvbridge``) and loads it here instead, so the atvbridge
# import chain happens after ``pytest-cov`` starts tracing.
pytest_plugins = ["atvbridge.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may require external services)"
    )


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers, level and debug loggers.

    ``configure_logging()`` replaces root handlers; tests that call it
    (directly or through ``Bridge.run()``) must not leak that state.
    """
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.handlers = original_handlers
    root.setLevel(original_level)
    for name in ("atvbridge", "pyatv"):
        logging.getLogger(name).setLevel(logging.NOTSET)
