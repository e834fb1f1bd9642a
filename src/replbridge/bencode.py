"""Bencode, the framing nREPL uses on its socket transport.

Byte strings are decoded as UTF-8 text (invalid sequences replaced): every
nREPL payload field is text, and callers work with `str` throughout.
"""

from __future__ import annotations

from typing import Any, List, Tuple

from replbridge.errors import ProtocolError


def encode(value: Any) -> bytes:
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, str):
        raw = value.encode("utf-8")
        out += b"%d:" % len(raw) + raw
    elif isinstance(value, (bytes, bytearray)):
        out += b"%d:" % len(value) + bytes(value)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif not isinstance(key, bytes):
                raise TypeError(f"bencode dict keys must be str or bytes, got {type(key).__name__}")
            items.append((key, item))
        for key, item in sorted(items, key=lambda pair: pair[0]):
            out += b"%d:" % len(key) + key
            _encode_into(item, out)
        out += b"e"
    else:
        raise TypeError(f"cannot bencode value of type {type(value).__name__}")


class _Incomplete(Exception):
    """More bytes are needed to finish the current value."""


class Decoder:
    """Incremental decoder: feed arbitrary chunks, get back complete values."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Any]:
        self._buffer += data
        values: List[Any] = []
        while self._buffer:
            try:
                value, end = _decode(self._buffer, 0)
            except _Incomplete:
                break
            values.append(value)
            del self._buffer[:end]
        return values


def decode(data: bytes) -> Any:
    """Decode exactly one complete value."""
    try:
        value, end = _decode(bytearray(data), 0)
    except _Incomplete as exc:
        raise ProtocolError("truncated bencode value") from exc
    if end != len(data):
        raise ProtocolError("trailing data after bencode value")
    return value


def _decode(buf: bytearray, pos: int) -> Tuple[Any, int]:
    if pos >= len(buf):
        raise _Incomplete
    lead = buf[pos : pos + 1]
    if lead == b"i":
        end = buf.find(b"e", pos + 1)
        if end < 0:
            raise _Incomplete
        try:
            return int(buf[pos + 1 : end]), end + 1
        except ValueError as exc:
            raise ProtocolError(f"invalid bencode integer at offset {pos}") from exc
    if lead == b"l":
        items: List[Any] = []
        pos += 1
        while True:
            if pos >= len(buf):
                raise _Incomplete
            if buf[pos : pos + 1] == b"e":
                return items, pos + 1
            item, pos = _decode(buf, pos)
            items.append(item)
    if lead == b"d":
        result = {}
        pos += 1
        while True:
            if pos >= len(buf):
                raise _Incomplete
            if buf[pos : pos + 1] == b"e":
                return result, pos + 1
            key, pos = _decode(buf, pos)
            if not isinstance(key, str):
                raise ProtocolError(f"bencode dict key must be a string at offset {pos}")
            result[key], pos = _decode(buf, pos)
    if lead.isdigit():
        colon = buf.find(b":", pos)
        if colon < 0:
            raise _Incomplete
        try:
            length = int(buf[pos:colon])
        except ValueError as exc:
            raise ProtocolError(f"invalid bencode string length at offset {pos}") from exc
        start = colon + 1
        end = start + length
        if end > len(buf):
            raise _Incomplete
        return bytes(buf[start:end]).decode("utf-8", errors="replace"), end
    raise ProtocolError(f"unexpected bencode token {bytes(lead)!r} at offset {pos}")
