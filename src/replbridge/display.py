"""Shared rich console utilities for CLI output."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Iterable, Mapping

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.status import Status
from rich.table import Table
from rich.text import Text

from replbridge.outputs import DIVIDER, ERR, EX, OUT, VALUE, Output, format_output, partition_outputs

# Render with rich into a buffer, then hand the ANSI text to prompt_toolkit so
# output does not fight with an active prompt.
_status_console = Console(stderr=True, force_terminal=True, color_system="standard", markup=False, highlight=False)
_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()

_OUTPUT_STYLES = {
    VALUE: "green",
    OUT: None,
    ERR: "red",
    EX: "bold red",
}


class EvalStatus:
    """Spinner shown while an evaluation is running."""

    def __init__(self, console: Console) -> None:
        self._console = console
        self._lock = Lock()
        self._status: Status | None = None

    def start(self, text: str = "Evaluating...") -> None:
        with self._lock:
            if self._status is not None:
                return
            self._status = self._console.status(Text(text, style="cyan"))
            self._status.start()

    def stop(self) -> None:
        with self._lock:
            if self._status is None:
                return
            self._status.stop()
            self._status = None


def create_eval_status() -> EvalStatus:
    return EvalStatus(_status_console)


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    end = kwargs.get("end")
    if end is None:
        kwargs["end"] = "\n"
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def _render_text(text: str, style: str | None) -> Text:
    if "\x1b" in text:
        return Text.from_ansi(text)
    if style:
        return Text(text, style=style)
    return Text(text)


def print_outputs(outputs: Iterable[Output]) -> None:
    """Print evaluation outputs, one block per value, in arrival order."""
    for index, block in enumerate(partition_outputs(outputs)):
        if index:
            _render_and_print(Text(DIVIDER, style="dim"))
        for kind, text in block:
            _render_and_print(_render_text(format_output(kind, text), _OUTPUT_STYLES.get(kind)))


def print_error(message: str) -> None:
    _render_and_print(Text(f"error: {message}", style="red"))


def print_info(message: str) -> None:
    _render_and_print(Text(message, style="cyan"))


def print_port(port: int, strategy: str) -> None:
    _render_and_print(Text(f"{port}", style="bold"), Text(f"({strategy})", style="dim"))


def print_describe(describe: Mapping[str, Any], env_type: str) -> None:
    """Render a `describe` reply as a small table of versions and ops."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("env", env_type)
    versions = describe.get("versions") or {}
    for name in sorted(versions):
        info = versions[name]
        version = info.get("version-string") if isinstance(info, Mapping) else info
        table.add_row(name, str(version or "?"))
    ops = describe.get("ops") or {}
    table.add_row("ops", ", ".join(sorted(ops)))
    _render_and_print(table)
