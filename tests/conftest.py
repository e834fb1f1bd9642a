from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from replbridge.log_utils import WIRE_LOGGER
from tests.utils import FakeNreplServer, SilentNreplServer


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs to avoid permission issues."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.setattr(Path, "home", lambda: base)
    for name in list(os.environ):
        if name.startswith("REPLBRIDGE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def nrepl_server():
    server = FakeNreplServer()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def silent_nrepl_server():
    server = SilentNreplServer()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def restore_logging():
    """Put back the root handlers pytest installed after code reconfigures logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    wire = logging.getLogger(WIRE_LOGGER)
    wire_level = wire.level
    yield
    wire.setLevel(wire_level)
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
