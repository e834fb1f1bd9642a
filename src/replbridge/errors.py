"""Error taxonomy for process launch, port discovery and protocol calls.

Every error carries the diagnostic context it was raised with (command,
accumulated output, file path, raw file content, timeout) both as attributes
and in its message, so callers can surface it without re-deriving anything.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class ReplBridgeError(RuntimeError):
    """Base class for every error raised by replbridge."""


class ConfigError(ReplBridgeError):
    """Raised when configuration files or values are invalid."""


class NoPortConfigured(ReplBridgeError):
    """Raised when no explicit port exists and no discovery strategy yields one."""

    def __init__(self, message: str, config: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.config = dict(config or {})


class CommandExecutionFailure(ReplBridgeError):
    """Raised when the OS cannot start the configured command."""

    def __init__(self, command: str, cause: BaseException | str) -> None:
        self.command = command
        self.cause = str(cause)
        super().__init__(f"Command execution failed: {command!r}: {self.cause}")


class PortDiscoveryError(ReplBridgeError):
    """Raised when no port could be extracted from a process's output."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{message}\nSTDOUT: {stdout}\nSTDERR: {stderr}")


class PortDiscoveryTimeout(PortDiscoveryError):
    def __init__(self, timeout_ms: int, *, stdout: str = "", stderr: str = "") -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Timeout after {timeout_ms}ms waiting for nREPL port.",
            stdout=stdout,
            stderr=stderr,
        )


class ProcessTerminatedPrematurely(PortDiscoveryError):
    def __init__(self, exit_code: Optional[int], *, stdout: str = "", stderr: str = "") -> None:
        self.exit_code = exit_code
        super().__init__(
            f"Process terminated with exit code {exit_code} before nREPL port was found.",
            stdout=stdout,
            stderr=stderr,
        )


class PortFileError(ReplBridgeError):
    """Base class for sentinel port-file failures."""

    def __init__(self, message: str, path: str) -> None:
        self.path = path
        super().__init__(f"{message}: {path}")


class PortFileNotFound(PortFileError):
    def __init__(self, path: str) -> None:
        super().__init__(".nrepl-port file not found", path)


class InvalidPortNumber(PortFileError):
    def __init__(self, path: str, content: str) -> None:
        self.content = content
        super().__init__(f"Invalid port number {content!r} in port file", path)


class PortOutOfRange(PortFileError):
    def __init__(self, path: str, port: int) -> None:
        self.port = port
        super().__init__(f"Port number {port} out of valid range (1024-65535)", path)


class PortFileTimeout(PortFileError):
    def __init__(self, path: str, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms}ms waiting for .nrepl-port file creation", path)


class ConnectionFailure(ReplBridgeError):
    """Raised when a protocol connection cannot be opened."""

    def __init__(self, host: str, port: int, cause: BaseException | str) -> None:
        self.host = host
        self.port = port
        self.cause = str(cause)
        super().__init__(f"Failed to connect to nREPL server at {host}:{port}: {self.cause}")


class ProtocolError(ReplBridgeError):
    """Raised on malformed wire data or a stream closed mid-reply."""


class ProtocolTimeout(ProtocolError):
    def __init__(self, op: str, timeout_ms: int) -> None:
        self.op = op
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms}ms waiting for {op!r} response")


class EvaluationTimeout(ProtocolTimeout):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__("eval", timeout_ms)
