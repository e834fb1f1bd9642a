from __future__ import annotations

from pathlib import Path

import pytest

from replbridge.config import ReplSettings
from replbridge.connection import create_and_start_connection
from replbridge.errors import ConnectionFailure, NoPortConfigured
from replbridge.port_discovery import PortFile
from tests.utils import FakeNreplServer


class FakeHandle:
    pid = 4242

    def __init__(self) -> None:
        self.destroyed = 0

    def destroy(self) -> None:
        self.destroyed += 1


def _settings(server, **kwargs) -> ReplSettings:
    return ReplSettings(host=server.host, port=server.port, **kwargs)


def test_explicit_port_bring_up(nrepl_server) -> None:
    with create_and_start_connection(_settings(nrepl_server)) as conn:
        assert conn.port == nrepl_server.port
        assert conn.env_type == "clj"
        assert "eval" in conn.describe["ops"]
        assert conn.process is None
        assert conn.client.eval_code("(+ 1 2)")[0]["value"] == "(+ 1 2)"


def test_env_type_override(nrepl_server) -> None:
    conn = create_and_start_connection(_settings(nrepl_server, nrepl_env_type="bb"))
    assert conn.env_type == "bb"


def test_detects_babashka() -> None:
    with FakeNreplServer(versions={"babashka": "1.3.190", "babashka.nrepl": "0.0.6"}) as server:
        conn = create_and_start_connection(_settings(server))
    assert conn.env_type == "bb"


def test_port_file_bring_up(nrepl_server, tmp_path: Path) -> None:
    path = tmp_path / ".nrepl-port"
    path.write_text(str(nrepl_server.port))
    settings = ReplSettings(host=nrepl_server.host, read_nrepl_port_file=True, discovery_timeout_ms=1000)
    conn = create_and_start_connection(settings, port_file=PortFile(path, poll_interval=0.05))
    assert conn.port == nrepl_server.port


def test_launch_only_destroys_process_and_fails(tmp_path: Path) -> None:
    handles = []

    def launcher(command, *, cwd=None):
        handle = FakeHandle()
        handles.append(handle)
        return handle

    settings = ReplSettings(start_nrepl_cmd="bb nrepl-server")
    with pytest.raises(NoPortConfigured, match="port discovery is disabled"):
        create_and_start_connection(settings, port_file=PortFile(tmp_path / ".nrepl-port"), launcher=launcher)
    assert handles[0].destroyed == 1


def test_failure_after_launch_destroys_process(tmp_path: Path) -> None:
    path = tmp_path / ".nrepl-port"
    handles = []

    def launcher(command, *, cwd=None):
        # Announce a port nobody listens on.
        path.write_text("1025")
        handle = FakeHandle()
        handles.append(handle)
        return handle

    settings = ReplSettings(
        start_nrepl_cmd="lein repl",
        read_nrepl_port_file=True,
        discovery_timeout_ms=2000,
        describe_timeout_ms=500,
    )
    with pytest.raises(ConnectionFailure):
        create_and_start_connection(settings, port_file=PortFile(path, poll_interval=0.05), launcher=launcher)
    assert handles[0].destroyed == 1


def test_close_destroys_launched_process_once(nrepl_server, tmp_path: Path) -> None:
    path = tmp_path / ".nrepl-port"
    handle = FakeHandle()

    def launcher(command, *, cwd=None):
        path.write_text(str(nrepl_server.port))
        return handle

    settings = ReplSettings(
        host=nrepl_server.host,
        start_nrepl_cmd="lein repl",
        read_nrepl_port_file=True,
        discovery_timeout_ms=2000,
    )
    conn = create_and_start_connection(settings, port_file=PortFile(path, poll_interval=0.05), launcher=launcher)
    assert conn.process is handle
    conn.close()
    conn.close()
    assert handle.destroyed == 1

