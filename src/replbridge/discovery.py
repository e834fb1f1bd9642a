"""Choosing and running a port discovery strategy.

Strategies, in strict priority order:

1. explicit port: used as-is, nothing is launched;
2. start command + port file ("coordinated"): delete the sentinel file,
   launch, then poll for a file written after the launch;
3. start command + stdout parsing: launch, then scan the output;
4. port file alone: poll against an already-running server;
5. start command alone: launch without discovery; the result has no port,
   so bring-up fails unless the caller supplies one;
6. nothing configured: fail.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from replbridge.config import ReplSettings
from replbridge.errors import NoPortConfigured
from replbridge.log_utils import log_context, log_event
from replbridge.port_discovery import PortFile, scan_for_port
from replbridge.process import ProcessHandle, launch

logger = logging.getLogger(__name__)

EXPLICIT = "explicit"
COORDINATED = "coordinated"
STDOUT = "stdout"
PORT_FILE = "port-file"
LAUNCH_ONLY = "launch-only"

Launcher = Callable[..., ProcessHandle]


@dataclass
class DiscoveryResult:
    port: Optional[int]
    strategy: str
    process: Optional[ProcessHandle] = None


def select_strategy(settings: ReplSettings) -> Optional[str]:
    if settings.port is not None:
        return EXPLICIT
    if settings.start_nrepl_cmd and settings.read_nrepl_port_file:
        return COORDINATED
    if settings.start_nrepl_cmd and settings.parse_nrepl_port:
        return STDOUT
    if settings.read_nrepl_port_file:
        return PORT_FILE
    if settings.start_nrepl_cmd:
        return LAUNCH_ONLY
    return None


def destroy_quietly(process: Optional[ProcessHandle]) -> None:
    """Best-effort cleanup after a failure; errors are logged, never raised."""
    if process is None:
        return
    try:
        process.destroy()
    except Exception:
        logger.warning("Failed to clean up process %s after discovery failure", process.pid, exc_info=True)


def start_and_read_port_file(
    command: str,
    port_file: PortFile,
    timeout_ms: int,
    *,
    launcher: Launcher = launch,
    cwd=None,
) -> DiscoveryResult:
    """Launch `command` and wait for the port file it writes.

    The sentinel is deleted before launching and only files modified at or
    after the launch are accepted, so a file left by an earlier run can never
    be mistaken for this one.
    """

    start_time = time.time()
    if port_file.delete():
        logger.info("Removed existing port file %s", port_file.path)
    process = launcher(command, cwd=cwd)
    logger.info("Started nREPL command, waiting for %s", port_file.path)
    try:
        port = port_file.poll(timeout_ms, start_time)
    except BaseException:
        destroy_quietly(process)
        raise
    return DiscoveryResult(port=port, strategy=COORDINATED, process=process)


def start_and_parse_port(
    command: str,
    timeout_ms: int,
    *,
    launcher: Launcher = launch,
    cwd=None,
) -> DiscoveryResult:
    """Launch `command` and read the port it announces on stdout."""

    process = launcher(command, cwd=cwd)
    try:
        port = scan_for_port(process, timeout_ms)
    except BaseException:
        destroy_quietly(process)
        raise
    return DiscoveryResult(port=port, strategy=STDOUT, process=process)


def resolve_port(
    settings: ReplSettings,
    *,
    port_file: Optional[PortFile] = None,
    launcher: Launcher = launch,
) -> DiscoveryResult:
    """Run the highest-priority strategy the settings enable."""

    strategy = select_strategy(settings)
    port_file = port_file or PortFile(settings.port_file_path())
    timeout_ms = settings.discovery_timeout_ms
    command = settings.start_nrepl_cmd
    cwd = settings.project_dir

    with log_context(strategy=strategy):
        if strategy == EXPLICIT:
            logger.info("Using explicitly provided port %s", settings.port)
            return DiscoveryResult(port=settings.port, strategy=EXPLICIT)

        if strategy == COORDINATED:
            logger.info("Coordinating start_nrepl_cmd with read_nrepl_port_file")
            result = start_and_read_port_file(command, port_file, timeout_ms, launcher=launcher, cwd=cwd)
        elif strategy == STDOUT:
            logger.info("Executing start_nrepl_cmd to discover the port from its output")
            result = start_and_parse_port(command, timeout_ms, launcher=launcher, cwd=cwd)
        elif strategy == PORT_FILE:
            logger.info("Reading nREPL port from %s", port_file.path)
            # The server is already running, so its file predates us; any mtime counts.
            result = DiscoveryResult(port=port_file.poll(timeout_ms, start_time=0.0), strategy=PORT_FILE)
        elif strategy == LAUNCH_ONLY:
            logger.info("Executing start_nrepl_cmd without port discovery")
            return DiscoveryResult(port=None, strategy=LAUNCH_ONLY, process=launcher(command, cwd=cwd))
        else:
            raise NoPortConfigured(
                "No port specified and no port discovery options configured",
                settings.model_dump(),
            )

        log_event(logger, "port.resolved", port=result.port)
        return result
