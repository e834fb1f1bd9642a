"""Connection settings for replbridge.

Settings are layered, later sources winning:

1. `.env` files (loaded into the environment with python-dotenv),
2. a JSON config file (explicit path, `<project>/.replbridge/config.json`, or
   the per-user `config.json`),
3. `REPLBRIDGE_*` environment variables,
4. keyword overrides, typically from CLI flags.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from replbridge.errors import ConfigError, NoPortConfigured
from replbridge.paths import PROJECT_CONFIG_DIR, config_dir, default_port_file

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
ENV_PREFIX = "REPLBRIDGE_"


class ReplSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = Field(
        "localhost",
        min_length=1,
        description="Host the nREPL server listens on",
    )
    port: int | None = Field(
        None,
        ge=1,
        le=65535,
        description="Explicit nREPL port; skips every discovery strategy",
    )
    start_nrepl_cmd: str | None = Field(
        None,
        description="Shell command that starts the nREPL server",
    )
    parse_nrepl_port: bool = Field(
        False,
        description="Discover the port by scanning the started command's stdout",
    )
    read_nrepl_port_file: bool = Field(
        False,
        description="Discover the port from the .nrepl-port sentinel file",
    )
    port_file: str | None = Field(
        None,
        description="Sentinel file path (default: <project_dir or cwd>/.nrepl-port)",
    )
    project_dir: str | None = Field(
        None,
        description="Project root; used as the command's working directory",
    )
    nrepl_env_type: str | None = Field(
        None,
        description="Force the remote environment type instead of detecting it",
    )
    discovery_timeout_ms: int = Field(30_000, gt=0)
    eval_timeout_ms: int = Field(20_000, gt=0)
    describe_timeout_ms: int = Field(10_000, gt=0)
    interrupt_timeout_ms: int = Field(1_000, gt=0)

    @field_validator("start_nrepl_cmd", "port_file", "nrepl_env_type")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("project_dir")
    @classmethod
    def _existing_dir(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not Path(value).is_dir():
            raise ValueError(f"project_dir is not an existing directory: {value}")
        return str(Path(value).resolve())

    @property
    def has_port_discovery(self) -> bool:
        return bool((self.start_nrepl_cmd and self.parse_nrepl_port) or self.read_nrepl_port_file)

    def working_dir(self) -> Path:
        return Path(self.project_dir) if self.project_dir else Path.cwd()

    def port_file_path(self) -> Path:
        if self.port_file:
            path = Path(self.port_file)
            return path if path.is_absolute() else self.working_dir() / path
        return default_port_file(self.working_dir())


def env_file() -> Path:
    """Per-user `.env` file consulted before the working directory one."""
    return config_dir() / ".env"


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file must contain a JSON object: {path}")
    return data


def find_config_file(project_dir: Optional[Path] = None) -> Optional[Path]:
    """Locate the project config file, falling back to the per-user one."""

    base = project_dir if project_dir is not None else Path.cwd()
    candidate = base / PROJECT_CONFIG_DIR / CONFIG_FILE_NAME
    if candidate.is_file():
        return candidate
    user_file = config_dir() / CONFIG_FILE_NAME
    if user_file.is_file():
        return user_file
    return None


def _env_overrides() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in ReplSettings.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    return values


def load_settings(
    config_file: Optional[str | Path] = None,
    project_dir: Optional[str | Path] = None,
    **overrides: Any,
) -> ReplSettings:
    """Build validated settings from every configuration layer."""

    load_dotenv(env_file(), override=False)
    load_dotenv(find_dotenv(usecwd=True), override=False)

    data: Dict[str, Any] = {}
    project_path = Path(project_dir) if project_dir else None
    path = Path(config_file) if config_file else find_config_file(project_path)
    if path is not None:
        logger.info("Loading replbridge config from %s", path)
        data.update(_read_config_file(path))

    data.update(_env_overrides())
    if project_dir:
        data["project_dir"] = str(project_dir)
    data.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return ReplSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid replbridge configuration: {exc}") from exc


def validate_port_requirement(settings: ReplSettings) -> ReplSettings:
    """Require an explicit port unless some discovery strategy is enabled."""

    if settings.port is None and not settings.has_port_discovery:
        raise NoPortConfigured(
            "No port provided and no port discovery options enabled. Either provide a port, "
            "or configure start_nrepl_cmd with parse_nrepl_port, or read_nrepl_port_file.",
            settings.model_dump(),
        )
    return settings
