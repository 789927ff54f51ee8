"""
Pytest configuration for the LC-3 test suite.

    python -m pytest            # full suite
    python -m pytest -k Trap    # one group

Tests marked ``tty`` drive a real terminal (raw mode on stdin) and are
skipped when stdin is not a TTY, e.g. under CI or with output captured
from a pipe.
"""

import os

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "tty: tests requiring an interactive terminal on stdin (skipped otherwise)")


def _stdin_is_tty() -> bool:
    try:
        return os.isatty(0)
    except OSError:
        return False


def pytest_collection_modifyitems(config, items):
    if _stdin_is_tty():
        return
    skip_tty = pytest.mark.skip(reason="stdin is not a terminal")
    for item in items:
        if "tty" in item.keywords:
            item.add_marker(skip_tty)
