"""Launching the evaluation server as a child process.

The command is an opaque shell string, run through `sh -c` (or `cmd /c` on
Windows) so pipes and shell syntax behave the same everywhere. Output is
drained by one pump thread per stream, which lets callers read "whatever is
available right now" without ever blocking on the pipe.
"""

from __future__ import annotations

import codecs
import collections
import contextlib
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Deque, Mapping, Optional

from replbridge.errors import CommandExecutionFailure
from replbridge.log_utils import log_event

logger = logging.getLogger(__name__)

# Chunks retained per stream once nobody is reading; a long-lived server keeps
# writing long after its port has been found.
MAX_BUFFERED_CHUNKS = 1024
READ_CHUNK_SIZE = 4096


def shell_command(command: str) -> list[str]:
    """Wrap a command string in the platform shell invocation."""
    if sys.platform.startswith("win"):
        return ["cmd", "/c", command]
    return ["sh", "-c", command]


class _StreamPump:
    """Background reader that moves pipe output into an in-memory buffer."""

    def __init__(self, stream: IO[bytes], name: str) -> None:
        self._stream = stream
        self._chunks: Deque[bytes] = collections.deque(maxlen=MAX_BUFFERED_CHUNKS)
        self._lock = threading.Lock()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._thread = threading.Thread(target=self._run, name=f"replbridge-{name}", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        reader = getattr(self._stream, "read1", self._stream.read)
        while True:
            try:
                data = reader(READ_CHUNK_SIZE)
            except (OSError, ValueError):
                break
            if not data:
                break
            with self._lock:
                self._chunks.append(data)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._chunks)

    @property
    def exhausted(self) -> bool:
        """True once the stream hit EOF and every buffered byte was drained."""
        return not self._thread.is_alive() and not self.has_pending()

    def drain(self) -> str:
        with self._lock:
            data = b"".join(self._chunks)
            self._chunks.clear()
        final = not self._thread.is_alive() and not data
        return self._decoder.decode(data, final=final)

    def join(self, timeout: float) -> None:
        self._thread.join(timeout)


@dataclass
class ProcessHandle:
    """A launched child process and its captured output streams."""

    command: str
    proc: subprocess.Popen
    started_at: float = field(default_factory=time.time)
    _stdout: Optional[_StreamPump] = field(init=False, default=None, repr=False)
    _stderr: Optional[_StreamPump] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.proc.stdout is not None:
            self._stdout = _StreamPump(self.proc.stdout, "stdout")
        if self.proc.stderr is not None:
            self._stderr = _StreamPump(self.proc.stderr, "stderr")

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def exit_code(self) -> Optional[int]:
        return self.proc.poll()

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def read_stdout(self) -> str:
        """Return stdout produced since the last read, without blocking."""
        return self._stdout.drain() if self._stdout else ""

    def read_stderr(self) -> str:
        """Return stderr produced since the last read, without blocking."""
        return self._stderr.drain() if self._stderr else ""

    def output_exhausted(self) -> bool:
        """True when the process exited and both streams have nothing left."""
        if self.is_alive():
            return False
        return all(pump is None or pump.exhausted for pump in (self._stdout, self._stderr))

    def destroy(self, timeout: float = 5.0) -> None:
        """Terminate the process (and its process group), killing it if it lingers."""
        if self.is_alive():
            log_event(logger, "process.destroy", pid=self.pid, command=self.command)
            self._signal(signal.SIGTERM)
            try:
                self.proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))
                self.proc.wait(timeout=timeout)
        for pump in (self._stdout, self._stderr):
            if pump is not None:
                pump.join(0.5)
        for stream in (self.proc.stdout, self.proc.stderr):
            if stream is not None:
                with contextlib.suppress(OSError):
                    stream.close()

    def _signal(self, sig: int) -> None:
        if os.name == "posix":
            try:
                os.killpg(self.proc.pid, sig)
                return
            except (ProcessLookupError, PermissionError):
                pass
        with contextlib.suppress(ProcessLookupError):
            if sig == signal.SIGTERM:
                self.proc.terminate()
            else:
                self.proc.kill()


def launch(
    command: str,
    *,
    cwd: Optional[Path | str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ProcessHandle:
    """Start `command` through the platform shell with captured output."""

    argv = shell_command(command)
    log_event(logger, "process.launch", command=command, cwd=str(cwd) if cwd else None)
    started_at = time.time()
    try:
        proc = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except (OSError, ValueError) as exc:
        logger.error("Failed to start command %r", command, exc_info=True)
        raise CommandExecutionFailure(command, exc) from exc
    log_event(logger, "process.launched", pid=proc.pid, command=command)
    return ProcessHandle(command=command, proc=proc, started_at=started_at)
