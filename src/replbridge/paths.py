"""Shared app directory helpers based on platformdirs."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "replbridge"
PORT_FILE_NAME = ".nrepl-port"
PROJECT_CONFIG_DIR = ".replbridge"


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_config_path))


def log_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_log_path))


def default_port_file(working_dir: Path | None = None) -> Path:
    """Conventional sentinel file location: `<working-dir>/.nrepl-port`."""
    base = working_dir if working_dir is not None else Path.cwd()
    return (base / PORT_FILE_NAME).absolute()
