from __future__ import annotations

import socket
import threading
import uuid
from typing import Any, Dict, List, Optional

from replbridge import bencode

CLOJURE_VERSIONS = {
    "clojure": {"major": 1, "minor": 12, "version-string": "1.12.0"},
    "java": {"version-string": "21"},
    "nrepl": {"major": 1, "minor": 3, "version-string": "1.3.0"},
}
OPS = ("clone", "close", "describe", "eval", "interrupt", "ls-sessions")


class FakeNreplServer:
    """Threaded nREPL stand-in speaking bencode over a real socket.

    Evaluation understands a few canned forms:

    * `(in-ns 'foo)` switches the namespace reported by later replies,
    * `(println "x")` sends `out` before the value,
    * `(throw ...)` replies with `ex`/`err` and an `eval-error` status,
    * `(hang)` never replies until interrupted or the server stops,
    * anything else is echoed back as its own value.
    """

    def __init__(self, versions: Optional[Dict[str, Any]] = None) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.host = "127.0.0.1"
        self.port = self._sock.getsockname()[1]
        self._sock.listen(5)
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.versions = versions if versions is not None else dict(CLOJURE_VERSIONS)
        self.sessions: List[str] = []
        self.requests: List[Dict[str, Any]] = []
        self.ns = "user"
        self._running: Dict[str, threading.Event] = {}
        self.eval_started = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def __enter__(self) -> "FakeNreplServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            for event in self._running.values():
                event.set()
        try:
            self._sock.close()
        except OSError:
            pass

    def restart(self) -> None:
        """Forget every session, as a restarted server would."""
        with self._lock:
            self.sessions.clear()

    def requests_for(self, op: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [msg for msg in self.requests if msg.get("op") == op]

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except OSError:
                break
            conn.settimeout(1.0)
            thread = threading.Thread(target=self._handle_client, args=(conn,), daemon=True)
            thread.start()

    def _handle_client(self, conn: socket.socket) -> None:
        decoder = bencode.Decoder()
        with conn:
            while not self._stop.is_set():
                try:
                    chunk = conn.recv(4096)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not chunk:
                    break
                for msg in decoder.feed(chunk):
                    with self._lock:
                        self.requests.append(msg)
                    try:
                        for response in self._handle(msg):
                            conn.sendall(bencode.encode(response))
                    except OSError:
                        return

    def _handle(self, msg: Dict[str, Any]) -> List[Dict[str, Any]]:
        op = msg.get("op")
        base = {"id": msg.get("id")}
        if msg.get("session"):
            base["session"] = msg["session"]
        if op == "clone":
            session_id = str(uuid.uuid4())
            with self._lock:
                self.sessions.append(session_id)
            return [{**base, "new-session": session_id, "status": ["done"]}]
        if op == "ls-sessions":
            with self._lock:
                sessions = list(self.sessions)
            return [{**base, "sessions": sessions, "status": ["done"]}]
        if op == "describe":
            return [
                {
                    **base,
                    "ops": {name: {} for name in OPS},
                    "versions": self.versions,
                    "aux": {"current-ns": self.ns},
                    "status": ["done"],
                }
            ]
        if op == "interrupt":
            with self._lock:
                event = self._running.get(msg.get("interrupt-id"))
            if event is None:
                return [{**base, "status": ["session-idle", "done"]}]
            event.set()
            return [{**base, "status": ["done"]}]
        if op == "eval":
            return self._eval(base, msg)
        return [{**base, "status": ["error", "unknown-op", "done"]}]

    def _eval(self, base: Dict[str, Any], msg: Dict[str, Any]) -> List[Dict[str, Any]]:
        code = str(msg.get("code", "")).strip()
        self.eval_started.set()
        if code.startswith("(in-ns '"):
            self.ns = code[len("(in-ns '") :].rstrip(")")
            return [{**base, "ns": self.ns, "value": f"#namespace[{self.ns}]"}, {**base, "status": ["done"]}]
        if code.startswith("(println "):
            text = code[len("(println ") :].rstrip(")").strip('"')
            return [
                {**base, "out": f"{text}\n"},
                {**base, "ns": self.ns, "value": "nil"},
                {**base, "status": ["done"]},
            ]
        if code.startswith("(throw"):
            return [
                {**base, "err": "Execution error at user/eval1 (REPL:1).\nboom\n"},
                {**base, "ex": "class clojure.lang.ExceptionInfo", "root-ex": "class clojure.lang.ExceptionInfo"},
                {**base, "status": ["eval-error"]},
                {**base, "status": ["done"]},
            ]
        if code == "(hang)":
            event = threading.Event()
            with self._lock:
                self._running[msg.get("id")] = event
            event.wait(30)
            with self._lock:
                self._running.pop(msg.get("id"), None)
            if self._stop.is_set():
                return []
            return [{**base, "status": ["interrupted", "done"]}]
        return [{**base, "ns": self.ns, "value": code}, {**base, "status": ["done"]}]


class SilentNreplServer:
    """Accepts connections and reads requests but never answers any of them."""

    def __init__(self) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.host = "127.0.0.1"
        self.port = self._sock.getsockname()[1]
        self._sock.listen(5)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        try:
            self._sock.close()
        except OSError:
            pass

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except OSError:
                break
            threading.Thread(target=self._drain, args=(conn,), daemon=True).start()

    def _drain(self, conn: socket.socket) -> None:
        conn.settimeout(1.0)
        with conn:
            while not self._stop.is_set():
                try:
                    if not conn.recv(4096):
                        break
                except socket.timeout:
                    continue
                except OSError:
                    break
