"""Finding the port an nREPL server listens on.

Two independent channels are supported:

* the server's own stdout, scanned incrementally while it starts up
  (`scan_for_port`), and
* the `.nrepl-port` sentinel file most servers write into their working
  directory (`PortFile`), optionally polled until a fresh copy appears.

Every path accepts only ports in 1024-65535.
"""

from __future__ import annotations

import logging
import math
import re
import time
from pathlib import Path
from typing import Callable, Optional, Union

from replbridge.errors import (
    InvalidPortNumber,
    PortDiscoveryTimeout,
    PortFileError,
    PortFileNotFound,
    PortFileTimeout,
    PortOutOfRange,
    ProcessTerminatedPrematurely,
)
from replbridge.log_utils import log_event
from replbridge.paths import default_port_file
from replbridge.process import ProcessHandle

logger = logging.getLogger(__name__)

MIN_PORT = 1024
MAX_PORT = 65535

DEFAULT_DISCOVERY_TIMEOUT_MS = 30_000
STREAM_POLL_INTERVAL = 0.1
FILE_POLL_INTERVAL = 0.5

# Announcement patterns, most specific first. Only the first match of each
# pattern is considered, mirroring a plain regex search.
_PORT_PATTERNS = (
    re.compile(r"\bnrepl[^\n\r]*?\bport\b[^\d]{0,20}(\d{4,5})\b", re.IGNORECASE | re.ASCII),
    re.compile(r"\bport\b[^\d]{0,20}(\d{4,5})\b", re.IGNORECASE | re.ASCII),
    re.compile(r"\bnrepl[^\n\r]*?(\d{4,5})\b", re.IGNORECASE | re.ASCII),
)
_BARE_NUMBER = re.compile(r"\d{4,5}", re.ASCII)

PathProvider = Callable[[], Path]


def valid_port(port: int) -> bool:
    return MIN_PORT <= port <= MAX_PORT


def parse_port_from_output(output: Optional[str]) -> Optional[int]:
    """Extract an announced nREPL port from process output.

    Handles the usual announcements ("nREPL server started on port 7888",
    "Port: 7888", "nrepl://localhost:9000"); when none of them match, the last
    in-range 4-5 digit number anywhere in the text wins. Returns None when
    nothing plausible is present.
    """

    if not output:
        return None
    for pattern in _PORT_PATTERNS:
        match = pattern.search(output)
        if match:
            port = int(match.group(1))
            if valid_port(port):
                return port
    candidates = [int(raw) for raw in _BARE_NUMBER.findall(output)]
    in_range = [port for port in candidates if valid_port(port)]
    return in_range[-1] if in_range else None


def scan_for_port(
    handle: ProcessHandle,
    timeout_ms: int = DEFAULT_DISCOVERY_TIMEOUT_MS,
    *,
    poll_interval: float = STREAM_POLL_INTERVAL,
) -> int:
    """Drain a running process's output until it announces a port.

    Raises `PortDiscoveryTimeout` when the deadline passes and
    `ProcessTerminatedPrematurely` when the process exits first; both carry
    everything read from stdout and stderr so far.
    """

    deadline = time.monotonic() + timeout_ms / 1000.0
    collected_stdout = ""
    collected_stderr = ""
    while True:
        if time.monotonic() > deadline:
            logger.error("Timed out waiting for nREPL port from %r", handle.command)
            raise PortDiscoveryTimeout(timeout_ms, stdout=collected_stdout, stderr=collected_stderr)

        if handle.output_exhausted():
            exit_code = handle.exit_code
            logger.error("Process %r exited with %s before announcing a port", handle.command, exit_code)
            raise ProcessTerminatedPrematurely(exit_code, stdout=collected_stdout, stderr=collected_stderr)

        stdout_chunk = handle.read_stdout()
        collected_stdout += stdout_chunk
        collected_stderr += handle.read_stderr()
        if stdout_chunk:
            port = parse_port_from_output(collected_stdout)
            if port is not None:
                log_event(logger, "port.discovered", port=port, source="stdout", pid=handle.pid)
                return port
        time.sleep(poll_interval)


class PortFile:
    """Reader/poller for the `.nrepl-port` sentinel file.

    `path` may be a fixed path or a zero-argument callable returning one; the
    callable form lets tests and custom layouts redirect lookups without any
    global state. The default is `<cwd>/.nrepl-port`, resolved at each call.
    """

    def __init__(
        self,
        path: Union[Path, str, PathProvider, None] = None,
        *,
        poll_interval: float = FILE_POLL_INTERVAL,
    ) -> None:
        if path is None:
            self._provider: PathProvider = default_port_file
        elif callable(path):
            self._provider = path
        else:
            fixed = Path(path)
            self._provider = lambda: fixed
        self.poll_interval = poll_interval

    @property
    def path(self) -> Path:
        return Path(self._provider())

    def exists(self) -> bool:
        return self.path.exists()

    def is_fresh(self, start_time: float) -> bool:
        """True if the file exists and was modified at or after `start_time` (epoch seconds).

        `start_time` is floored to whole seconds first: filesystems with
        one-second timestamps would otherwise report a file written in the
        same second as older than the launch.
        """
        try:
            return self.path.stat().st_mtime >= math.floor(start_time)
        except FileNotFoundError:
            return False

    def delete(self) -> bool:
        """Remove a leftover file; returns True if one was removed."""
        path = self.path
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        log_event(logger, "port_file.deleted", path=str(path))
        return True

    def read(self) -> int:
        """Read and validate the port stored in the file."""
        path = self.path
        logger.debug("Reading nREPL port from %s", path)
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise PortFileNotFound(str(path)) from exc
        try:
            port = int(content)
        except ValueError as exc:
            raise InvalidPortNumber(str(path), content) from exc
        if not valid_port(port):
            raise PortOutOfRange(str(path), port)
        log_event(logger, "port.discovered", port=port, source="port_file", path=str(path))
        return port

    def poll(self, timeout_ms: int = DEFAULT_DISCOVERY_TIMEOUT_MS, start_time: Optional[float] = None) -> int:
        """Wait for a fresh port file and return its port.

        Files modified before `start_time` (default: now) belong to an earlier
        run and are ignored. A fresh file that cannot be read yet, e.g. one
        still being written, is retried until the deadline.
        """

        if start_time is None:
            start_time = time.time()
        deadline = time.monotonic() + timeout_ms / 1000.0
        path = self.path
        stale_logged = False
        logger.info("Polling for nREPL port file %s", path)
        while True:
            if time.monotonic() > deadline:
                raise PortFileTimeout(str(path), timeout_ms)
            if self.is_fresh(start_time):
                try:
                    return self.read()
                except PortFileError as exc:
                    logger.warning("Port file %s not ready yet (%s), will retry", path, exc)
            elif not stale_logged and self.exists():
                log_event(logger, "port_file.stale", path=str(path), start_time=start_time)
                stale_logged = True
            time.sleep(max(0.0, min(self.poll_interval, deadline - time.monotonic())))
