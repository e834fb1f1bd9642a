"""Synchronous nREPL connection over a TCP socket.

A `NreplTransport` is a short-lived, per-call resource: open it, send one or a
few requests, collect their responses, close it. Every blocking read is
bounded by a deadline so a silent server can never hang the caller.
"""

from __future__ import annotations

import contextlib
import logging
import socket
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from replbridge import bencode
from replbridge.errors import ConnectionFailure, ProtocolError, ProtocolTimeout
from replbridge.log_utils import WIRE_LOGGER, wire_logging_enabled

logger = logging.getLogger(__name__)
wire_logger = logging.getLogger(WIRE_LOGGER)

DEFAULT_HOST = "localhost"
DEFAULT_TIMEOUT_MS = 10_000
RECV_SIZE = 65536

Message = Dict[str, Any]


def new_id() -> str:
    return str(uuid.uuid4())


def is_done(response: Message) -> bool:
    status = response.get("status") or []
    return "done" in status


class NreplTransport:
    """One open TCP connection to an nREPL server."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = 0, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        self._sock: Optional[socket.socket] = None
        self._decoder = bencode.Decoder()
        self._inbox: List[Message] = []

    def __enter__(self) -> "NreplTransport":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> None:
        if self._sock is not None:
            return
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout_ms / 1000.0)
        except OSError as exc:
            raise ConnectionFailure(self.host, self.port, exc) from exc
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._sock = sock
        logger.debug("Connected to nREPL at %s:%s", self.host, self.port)

    def close(self) -> None:
        sock = self._sock
        self._sock = None
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.close()

    def send(self, msg: Message) -> Message:
        """Send one request, adding an `id` if it has none."""
        if self._sock is None:
            raise ProtocolError("transport is not connected")
        msg = dict(msg)
        msg.setdefault("id", new_id())
        if wire_logging_enabled():
            wire_logger.debug(">> %s", msg)
        try:
            self._sock.sendall(bencode.encode(msg))
        except OSError as exc:
            self.close()
            raise ConnectionFailure(self.host, self.port, exc) from exc
        return msg

    def _receive(self, deadline: float, op: str, timeout_ms: int) -> Message:
        while not self._inbox:
            if self._sock is None:
                raise ProtocolError("transport is not connected")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolTimeout(op, timeout_ms)
            self._sock.settimeout(remaining)
            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout as exc:
                raise ProtocolTimeout(op, timeout_ms) from exc
            except OSError as exc:
                self.close()
                raise ConnectionFailure(self.host, self.port, exc) from exc
            if not chunk:
                self.close()
                raise ProtocolError(f"nREPL connection closed while waiting for {op!r} response")
            for value in self._decoder.feed(chunk):
                if not isinstance(value, dict):
                    raise ProtocolError(f"unexpected nREPL message: {value!r}")
                if wire_logging_enabled():
                    wire_logger.debug("<< %s", value)
                self._inbox.append(value)
        return self._inbox.pop(0)

    def responses(self, msg_id: str, *, op: str = "message", timeout_ms: Optional[int] = None) -> List[Message]:
        """Collect every response for `msg_id` up to and including the one marked done."""
        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000.0
        collected: List[Message] = []
        while True:
            response = self._receive(deadline, op, timeout_ms)
            if response.get("id") != msg_id:
                logger.debug("Ignoring nREPL response for other request %s", response.get("id"))
                continue
            collected.append(response)
            if is_done(response):
                return collected

    def message(self, msg: Message, timeout_ms: Optional[int] = None) -> List[Message]:
        """Send `msg` and block until its final response."""
        sent = self.send(msg)
        return self.responses(sent["id"], op=str(sent.get("op", "message")), timeout_ms=timeout_ms)

    def new_session(self, timeout_ms: Optional[int] = None) -> str:
        combined = combine_responses(self.message({"op": "clone"}, timeout_ms))
        session_id = combined.get("new-session")
        if not session_id:
            raise ProtocolError(f"clone response missing new-session: {combined}")
        return session_id

    def list_sessions(self, timeout_ms: Optional[int] = None) -> List[str]:
        combined = combine_responses(self.message({"op": "ls-sessions"}, timeout_ms))
        return list(combined.get("sessions") or [])


def combine_responses(responses: Iterable[Message]) -> Message:
    """Merge response fragments into one map.

    `value` fragments accumulate into a list, `out`/`err` text concatenates,
    `status` and other list fields are unioned in order, nested maps merge
    and any other field keeps its latest value.
    """

    combined: Message = {}
    for response in responses:
        for key, value in response.items():
            if key == "value":
                combined.setdefault("value", []).append(value)
            elif key in ("out", "err") and isinstance(value, str):
                combined[key] = combined.get(key, "") + value
            elif isinstance(value, list):
                merged = list(combined.get(key) or [])
                merged.extend(item for item in value if item not in merged)
                combined[key] = merged
            elif isinstance(value, dict) and isinstance(combined.get(key), dict):
                combined[key] = {**combined[key], **value}
            else:
                combined[key] = value
    return combined
