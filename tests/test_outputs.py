from __future__ import annotations

import re
from typing import List

import pytest

from replbridge import display
from replbridge.dialects import detect_env_type
from replbridge.outputs import DIVIDER, collect_outputs, format_outputs, has_error, partition_outputs

RESPONSES = [
    {"id": "1", "out": "hello\n"},
    {"id": "1", "ns": "user", "value": "nil"},
    {"id": "1", "value": "3"},
    {"id": "1", "status": ["done"]},
]


def test_collect_outputs_keeps_order() -> None:
    assert collect_outputs(RESPONSES) == [("out", "hello\n"), ("value", "nil"), ("value", "3")]


def test_collect_outputs_includes_errors() -> None:
    outputs = collect_outputs([{"err": "boom\n"}, {"ex": "class java.lang.Exception"}])
    assert outputs == [("err", "boom\n"), ("ex", "class java.lang.Exception")]


def test_has_error() -> None:
    assert not has_error(RESPONSES)
    assert has_error([{"err": "boom"}])
    assert has_error([{"ex": "class clojure.lang.ExceptionInfo"}])
    assert has_error([{"status": ["eval-error"]}, {"status": ["done"]}])


def test_format_outputs_partitions_by_value() -> None:
    text = format_outputs(collect_outputs(RESPONSES))
    assert text == f"hello\n=> nil\n{DIVIDER}\n=> 3"


def test_format_outputs_keeps_trailing_output() -> None:
    text = format_outputs([("value", "1"), ("err", "late warning\n")])
    assert text == f"=> 1\n{DIVIDER}\nlate warning"


def test_partition_outputs_closes_block_on_value() -> None:
    blocks = partition_outputs([("out", "a\n"), ("value", "1"), ("value", "2"), ("err", "late\n")])
    assert blocks == [[("out", "a\n"), ("value", "1")], [("value", "2")], [("err", "late\n")]]
    assert partition_outputs([]) == []


def test_print_outputs_matches_formatted_text(monkeypatch: pytest.MonkeyPatch) -> None:
    lines: List[str] = []
    monkeypatch.setattr(display, "print_formatted_text", lambda formatted, end="": lines.append(formatted.value))
    outputs = collect_outputs(RESPONSES)

    display.print_outputs(outputs)
    plain = re.sub(r"\x1b\[[0-9;]*m", "", "".join(lines))
    assert plain == format_outputs(outputs) + "\n"


def test_detect_env_type() -> None:
    assert detect_env_type({"versions": {"clojure": {}, "java": {}, "nrepl": {}}}) == "clj"
    assert detect_env_type({"versions": {"babashka": "1.3", "clojure": {}}}) == "bb"
    assert detect_env_type({"versions": {"basilisp": {}}}) == "basilisp"
    assert detect_env_type({"versions": {"sci-nrepl": {}}}) == "scittle"
    assert detect_env_type({"versions": {}}) == "unknown"
    assert detect_env_type(None) == "unknown"


def test_detect_env_type_override_wins() -> None:
    assert detect_env_type({"versions": {"clojure": {}}}, "bb") == "bb"
