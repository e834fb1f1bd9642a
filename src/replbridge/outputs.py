"""Turning evaluation responses into displayable output."""

from __future__ import annotations

from typing import Iterable, List, Tuple

from replbridge.transport import Message

VALUE = "value"
OUT = "out"
ERR = "err"
EX = "ex"

DIVIDER = "*" * 42
ERROR_STATUSES = frozenset({"eval-error", "error"})

Output = Tuple[str, str]


def collect_outputs(responses: Iterable[Message]) -> List[Output]:
    """Ordered `(kind, text)` pairs, one per value/out/err/ex field seen."""
    outputs: List[Output] = []
    for response in responses:
        for kind in (OUT, ERR, VALUE, EX):
            text = response.get(kind)
            if text is not None:
                outputs.append((kind, str(text)))
    return outputs


def has_error(responses: Iterable[Message]) -> bool:
    for response in responses:
        if response.get(EX) or response.get(ERR):
            return True
        if ERROR_STATUSES.intersection(response.get("status") or []):
            return True
    return False


def partition_outputs(outputs: Iterable[Output]) -> List[List[Output]]:
    """Group outputs into one block per evaluated form; a value closes its block."""
    blocks: List[List[Output]] = [[]]
    for output in outputs:
        blocks[-1].append(output)
        if output[0] == VALUE:
            blocks.append([])
    return [block for block in blocks if block]


def format_output(kind: str, text: str) -> str:
    return f"=> {text}" if kind == VALUE else text.rstrip("\n")


def format_outputs(outputs: Iterable[Output]) -> str:
    rendered = ["\n".join(format_output(kind, text) for kind, text in block) for block in partition_outputs(outputs)]
    return f"\n{DIVIDER}\n".join(rendered)
