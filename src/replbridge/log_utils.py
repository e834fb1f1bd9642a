"""Logging for replbridge: a rotating log file, optional console echo, and
structured `key=value` context.

The terminal belongs to the REPL (prompt_toolkit owns stdout), so everything
goes to `<log_dir>/replbridge.log` and only reaches stderr when asked for with
`-v`/`-vv` or `REPLBRIDGE_LOG_STDERR`. Raw protocol traffic is logged on its
own logger, `replbridge.transport.wire`, which stays quiet unless wire logging
is switched on, even when everything else runs at DEBUG.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from replbridge.paths import log_dir

LOG_FILE_NAME = "replbridge.log"
WIRE_LOGGER = "replbridge.transport.wire"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("replbridge_log_context", default={})


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    # Level for the stderr echo; None disables it.
    console_level: Optional[int] = None
    json: bool = False
    wire: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _env_level(name: str, default: int) -> int:
    value = (os.getenv(name) or "").strip()
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    with contextlib.suppress(TypeError, ValueError):
        return int(os.getenv(name))  # type: ignore[arg-type]
    return default


def _env_logger_levels(name: str) -> Dict[str, int]:
    """Parse `logger=LEVEL,other=LEVEL`; unknown levels are skipped."""
    levels: Dict[str, int] = {}
    for item in (os.getenv(name) or "").split(","):
        logger_name, _, level_name = item.partition("=")
        level = logging._nameToLevel.get(level_name.strip().upper())
        if logger_name.strip() and level is not None:
            levels[logger_name.strip()] = level
    return levels


def build_log_config(*, verbosity: int = 0, log_file_name: str = LOG_FILE_NAME) -> LogConfig:
    """Combine CLI verbosity with the `REPLBRIDGE_LOG_*` environment.

    `verbosity` 1 echoes INFO to stderr, 2 or more also drops the file level
    to DEBUG. `REPLBRIDGE_LOG_WIRE` opens up the wire logger regardless.
    """

    directory = Path(os.getenv("REPLBRIDGE_LOG_DIR") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)

    level = _env_level("REPLBRIDGE_LOG_LEVEL", logging.DEBUG if verbosity >= 2 else logging.INFO)
    console_level: Optional[int] = None
    if verbosity >= 2:
        console_level = logging.DEBUG
    elif verbosity == 1 or _env_flag("REPLBRIDGE_LOG_STDERR"):
        console_level = logging.INFO

    wire = _env_flag("REPLBRIDGE_LOG_WIRE")
    logger_levels = _env_logger_levels("REPLBRIDGE_LOG_LEVELS")
    logger_levels[WIRE_LOGGER] = logging.DEBUG if wire else logging.INFO

    return LogConfig(
        log_file=directory / log_file_name,
        level=level,
        console_level=console_level,
        json=_env_flag("REPLBRIDGE_LOG_JSON"),
        wire=wire,
        max_bytes=_env_int("REPLBRIDGE_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
        backup_count=_env_int("REPLBRIDGE_LOG_BACKUPS", DEFAULT_LOG_BACKUPS),
        logger_levels=logger_levels,
    )


def configure_logging(config: LogConfig) -> None:
    """Install the file (and optional stderr) handlers on the root logger.

    Existing root handlers are closed and replaced, so calling this twice
    never duplicates output.
    """

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    handler_levels = [config.level]
    if config.console_level is not None:
        handler_levels.append(config.console_level)
    root.setLevel(min(handler_levels))

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.NOTSET if config.wire else config.level)
    file_handler.setFormatter(JsonFormatter() if config.json else ContextFormatter(FILE_FORMAT))
    file_handler.addFilter(ContextFilter())
    root.addHandler(file_handler)

    if config.console_level is not None:
        console = logging.StreamHandler()
        console.setLevel(config.console_level)
        console.setFormatter(ContextFormatter(CONSOLE_FORMAT))
        console.addFilter(ContextFilter())
        root.addHandler(console)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def wire_logging_enabled() -> bool:
    """True when decoded protocol messages should be logged."""
    return logging.getLogger(WIRE_LOGGER).isEnabledFor(logging.DEBUG)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields such as `port=` or `strategy=` to every record in the block."""

    added = {key: value for key, value in fields.items() if value is not None}
    token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **added})
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a stable event name (`eval.start`, `port.discovered`, ...) with fields."""
    logger.log(level, event, extra={"event_fields": fields})


def _render(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    text = str(value)
    if not text or any(ch.isspace() or ch in '="' for ch in text):
        return json.dumps(text)
    return text


def _pairs(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_render(fields[key])}" for key in sorted(fields) if fields[key] is not None)


class ContextFilter(logging.Filter):
    """Stamp the active `log_context` fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class ContextFormatter(logging.Formatter):
    """Plain text with context, then event fields, appended as `key=value`."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        suffix = " ".join(
            part
            for part in (_pairs(getattr(record, "context_fields", {})), _pairs(getattr(record, "event_fields", {})))
            if part
        )
        return f"{line} {suffix}" if suffix else line


class JsonFormatter(logging.Formatter):
    """One JSON object per line: context and event fields sit beside the message."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "context_fields", {}))
        payload.update(getattr(record, "event_fields", {}))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
