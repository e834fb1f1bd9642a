"""Launch, discover and drive nREPL servers."""

from __future__ import annotations

__version__ = "0.1.0"

from replbridge.config import ReplSettings, load_settings, validate_port_requirement
from replbridge.connection import ReplConnection, create_and_start_connection
from replbridge.discovery import DiscoveryResult, resolve_port
from replbridge.errors import (
    CommandExecutionFailure,
    ConfigError,
    ConnectionFailure,
    EvaluationTimeout,
    InvalidPortNumber,
    NoPortConfigured,
    PortDiscoveryTimeout,
    PortFileNotFound,
    PortFileTimeout,
    PortOutOfRange,
    ProcessTerminatedPrematurely,
    ProtocolError,
    ProtocolTimeout,
    ReplBridgeError,
)
from replbridge.nrepl import ConnectionState, NreplClient
from replbridge.outputs import collect_outputs, format_outputs, has_error, partition_outputs

__all__ = [
    "CommandExecutionFailure",
    "ConfigError",
    "ConnectionFailure",
    "ConnectionState",
    "DiscoveryResult",
    "EvaluationTimeout",
    "InvalidPortNumber",
    "NoPortConfigured",
    "NreplClient",
    "PortDiscoveryTimeout",
    "PortFileNotFound",
    "PortFileTimeout",
    "PortOutOfRange",
    "ProcessTerminatedPrematurely",
    "ProtocolError",
    "ProtocolTimeout",
    "ReplBridgeError",
    "ReplConnection",
    "ReplSettings",
    "__version__",
    "collect_outputs",
    "create_and_start_connection",
    "format_outputs",
    "has_error",
    "load_settings",
    "partition_outputs",
    "resolve_port",
    "validate_port_requirement",
]
