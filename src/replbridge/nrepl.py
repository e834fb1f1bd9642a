"""Sessions, evaluation, interruption and describe against an nREPL server.

State that must survive between calls (cached session ids, the namespace each
session was last seen in, the id of the evaluation in flight) lives in one
`ConnectionState` per remote port. Connections themselves are never pooled:
every operation opens its own transport and closes it on the way out.

Cached session ids are revalidated against the server's live sessions before
reuse, since the server may have restarted behind our back.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from replbridge.errors import EvaluationTimeout, ProtocolTimeout, ReplBridgeError
from replbridge.log_utils import log_context, log_event
from replbridge.transport import DEFAULT_HOST, Message, NreplTransport, combine_responses, new_id

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TYPE = "default"
# Remote printer truncates values beyond this many characters.
TRUNCATION_LENGTH = 10_000
PRINT_FN = "nrepl.util.print/pprint"

DEFAULT_EVAL_TIMEOUT_MS = 20_000
DEFAULT_DESCRIBE_TIMEOUT_MS = 10_000
DEFAULT_INTERRUPT_TIMEOUT_MS = 1_000
DEFAULT_SESSION_TIMEOUT_MS = 5_000

TransportFactory = Callable[..., NreplTransport]


def _remaining_ms(deadline: Optional[float], cap: Optional[int] = None) -> int:
    """Milliseconds left until `deadline`, at least 1 and at most `cap`."""
    if deadline is None:
        assert cap is not None
        return cap
    remaining = max(1, int((deadline - time.monotonic()) * 1000))
    return remaining if cap is None else min(remaining, cap)


@dataclass
class ConnectionState:
    """Mutable per-port state: session cache, namespaces and the eval in flight.

    Mutations go through the methods below, all under `lock`. `eval_lock`
    serializes whole evaluations so at most one eval id is in flight and
    `interrupt` always targets the evaluation actually running.
    """

    sessions: Dict[str, str] = field(default_factory=dict)
    current_ns: Dict[str, str] = field(default_factory=dict)
    current_eval_id: Optional[str] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    eval_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def stored_session(self, session_type: str) -> Optional[str]:
        with self.lock:
            return self.sessions.get(session_type)

    def store_session(self, session_type: str, session_id: str) -> None:
        with self.lock:
            self.sessions[session_type] = session_id

    def namespace(self, session_type: str) -> Optional[str]:
        with self.lock:
            return self.current_ns.get(session_type)

    def set_namespace(self, session_type: str, ns: str) -> None:
        with self.lock:
            self.current_ns[session_type] = ns

    def begin_eval(self, eval_id: str) -> None:
        with self.lock:
            self.current_eval_id = eval_id

    def end_eval(self) -> None:
        with self.lock:
            self.current_eval_id = None


class NreplClient:
    """Drives one nREPL endpoint (host + port).

    Clients made with `with_port` share the per-port state registry, so
    talking to a second server on the same host keeps its own sessions.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = 0,
        *,
        eval_timeout_ms: int = DEFAULT_EVAL_TIMEOUT_MS,
        describe_timeout_ms: int = DEFAULT_DESCRIBE_TIMEOUT_MS,
        interrupt_timeout_ms: int = DEFAULT_INTERRUPT_TIMEOUT_MS,
        transport_factory: TransportFactory = NreplTransport,
        states: Optional[Dict[int, ConnectionState]] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.eval_timeout_ms = eval_timeout_ms
        self.describe_timeout_ms = describe_timeout_ms
        self.interrupt_timeout_ms = interrupt_timeout_ms
        self._transport_factory = transport_factory
        self._states: Dict[int, ConnectionState] = states if states is not None else {}
        self._states_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"NreplClient(host={self.host!r}, port={self.port})"

    @property
    def state(self) -> ConnectionState:
        with self._states_lock:
            state = self._states.get(self.port)
            if state is None:
                state = self._states[self.port] = ConnectionState()
            return state

    def with_port(self, port: int) -> "NreplClient":
        """A client for another port on the same host, sharing the state registry."""
        if port == self.port:
            return self
        return NreplClient(
            self.host,
            port,
            eval_timeout_ms=self.eval_timeout_ms,
            describe_timeout_ms=self.describe_timeout_ms,
            interrupt_timeout_ms=self.interrupt_timeout_ms,
            transport_factory=self._transport_factory,
            states=self._states,
        )

    def connect(self, timeout_ms: int) -> NreplTransport:
        transport = self._transport_factory(self.host, self.port, timeout_ms=timeout_ms)
        transport.connect()
        return transport

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session_valid(self, transport: NreplTransport, session_id: str, timeout_ms: int) -> bool:
        try:
            return session_id in transport.list_sessions(timeout_ms)
        except (ReplBridgeError, OSError):
            logger.debug("ls-sessions failed; treating session %s as invalid", session_id, exc_info=True)
            return False

    def ensure_session(
        self,
        transport: NreplTransport,
        session_type: str = DEFAULT_SESSION_TYPE,
        deadline: Optional[float] = None,
    ) -> str:
        """Return a live session id for `session_type`, creating one if needed.

        With a `deadline` (a `time.monotonic()` value) neither the liveness
        check nor the clone waits past it.
        """
        state = self.state
        stored = state.stored_session(session_type)
        if stored and self._session_valid(transport, stored, _remaining_ms(deadline, DEFAULT_SESSION_TIMEOUT_MS)):
            return stored
        if stored:
            log_event(logger, "session.stale", session_type=session_type, session=stored)
        session_id = transport.new_session(_remaining_ms(deadline, DEFAULT_SESSION_TIMEOUT_MS))
        state.store_session(session_type, session_id)
        log_event(logger, "session.created", session_type=session_type, session=session_id)
        return session_id

    def current_ns(self, session_type: str = DEFAULT_SESSION_TYPE) -> Optional[str]:
        """Namespace last reported for `session_type`, if any."""
        return self.state.namespace(session_type)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def eval_code(
        self,
        code: str,
        *,
        session_type: str = DEFAULT_SESSION_TYPE,
        timeout_ms: Optional[int] = None,
    ) -> List[Message]:
        """Evaluate `code` and return every response fragment, in order.

        `timeout_ms` bounds the whole call: waiting for another evaluation,
        connecting, session checks and the evaluation itself. Remote failures
        (exceptions, stderr output) come back inside the responses; only
        transport faults and timeouts raise.
        """

        if timeout_ms is None:
            timeout_ms = self.eval_timeout_ms
        if timeout_ms <= 0:
            raise EvaluationTimeout(timeout_ms)
        deadline = time.monotonic() + timeout_ms / 1000.0
        state = self.state
        if not state.eval_lock.acquire(timeout=timeout_ms / 1000.0):
            raise EvaluationTimeout(timeout_ms)
        try:
            with log_context(port=self.port, session_type=session_type):
                with self.connect(_remaining_ms(deadline)) as transport:
                    session_id = self.ensure_session(transport, session_type, deadline)
                    eval_id = new_id()
                    msg = {
                        "op": "eval",
                        "code": code,
                        "session": session_id,
                        "id": eval_id,
                        "nrepl.middleware.print/print": PRINT_FN,
                        "nrepl.middleware.print/quota": TRUNCATION_LENGTH,
                    }
                    state.begin_eval(eval_id)
                    log_event(logger, "eval.start", id=eval_id, session=session_id, code_chars=len(code))
                    try:
                        transport.send(msg)
                        responses = transport.responses(eval_id, op="eval", timeout_ms=_remaining_ms(deadline))
                        for response in responses:
                            ns = response.get("ns")
                            if ns:
                                state.set_namespace(session_type, ns)
                        log_event(logger, "eval.done", id=eval_id, responses=len(responses))
                        return responses
                    finally:
                        state.end_eval()
        except ProtocolTimeout as exc:
            raise EvaluationTimeout(timeout_ms) from exc
        finally:
            state.eval_lock.release()

    def interrupt(self) -> None:
        """Ask the server to stop the evaluation in flight, if there is one.

        Best-effort: the evaluation may already have finished, and no proof
        that it stopped is required.
        """

        state = self.state
        with state.lock:
            eval_id = state.current_eval_id
            session_id = state.sessions.get(DEFAULT_SESSION_TYPE)
        if not eval_id:
            return
        if not session_id:
            logger.warning("No cached session to interrupt evaluation %s", eval_id)
            return
        with self.connect(self.interrupt_timeout_ms) as transport:
            msg = {"op": "interrupt", "session": session_id, "interrupt-id": eval_id}
            responses = transport.message(msg, self.interrupt_timeout_ms)
        status = combine_responses(responses).get("status")
        log_event(logger, "interrupt.sent", port=self.port, id=eval_id, status=status)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def describe(self) -> Message:
        """Return the server's combined `describe` reply (ops, versions, aux)."""
        with self.connect(self.describe_timeout_ms) as transport:
            return combine_responses(transport.message({"op": "describe"}, self.describe_timeout_ms))
