"""Bringing an nREPL connection up and tearing it down."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from replbridge.config import ReplSettings
from replbridge.dialects import detect_env_type
from replbridge.discovery import LAUNCH_ONLY, Launcher, destroy_quietly, resolve_port
from replbridge.errors import NoPortConfigured
from replbridge.log_utils import log_event
from replbridge.nrepl import NreplClient
from replbridge.port_discovery import PortFile
from replbridge.process import ProcessHandle, launch

logger = logging.getLogger(__name__)


@dataclass
class ReplConnection:
    """A ready-to-use client plus whatever was started to serve it."""

    client: NreplClient
    env_type: str
    describe: Dict[str, Any] = field(default_factory=dict)
    process: Optional[ProcessHandle] = None

    @property
    def port(self) -> int:
        return self.client.port

    def __enter__(self) -> "ReplConnection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        process, self.process = self.process, None
        if process is not None:
            logger.info("Stopping nREPL process %s", process.pid)
            destroy_quietly(process)


def create_and_start_connection(
    settings: ReplSettings,
    *,
    port_file: Optional[PortFile] = None,
    launcher: Launcher = launch,
) -> ReplConnection:
    """Discover (and possibly start) the server, then describe it.

    A process launched along the way is destroyed if any later step fails.
    """

    logger.info("Creating nREPL connection to %s", settings.host)
    result = resolve_port(settings, port_file=port_file, launcher=launcher)
    try:
        if result.port is None:
            message = (
                "No port specified and port discovery is disabled"
                if result.strategy == LAUNCH_ONLY
                else "No port specified and no port discovery options configured"
            )
            raise NoPortConfigured(message, settings.model_dump())

        client = NreplClient(
            settings.host,
            result.port,
            eval_timeout_ms=settings.eval_timeout_ms,
            describe_timeout_ms=settings.describe_timeout_ms,
            interrupt_timeout_ms=settings.interrupt_timeout_ms,
        )
        describe = client.describe()
        env_type = detect_env_type(describe, settings.nrepl_env_type)
    except BaseException:
        logger.error("Failed to create nREPL connection", exc_info=True)
        destroy_quietly(result.process)
        raise

    log_event(logger, "connection.ready", port=result.port, strategy=result.strategy, env_type=env_type)
    return ReplConnection(client=client, env_type=env_type, describe=describe, process=result.process)
