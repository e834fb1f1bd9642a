"""Detecting which Clojure-family runtime sits behind an nREPL port."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

CLJ = "clj"
BB = "bb"
BASILISP = "basilisp"
SCITTLE = "scittle"
UNKNOWN = "unknown"

# Checked in order; babashka also reports a clojure version.
_VERSION_KEYS = (
    ("babashka", BB),
    ("basilisp", BASILISP),
    ("scittle", SCITTLE),
    ("sci-nrepl", SCITTLE),
    ("clojure", CLJ),
)


def detect_env_type(describe: Optional[Mapping[str, Any]], override: Optional[str] = None) -> str:
    """Environment type from a combined `describe` reply; `override` wins."""
    if override:
        return override
    versions = (describe or {}).get("versions") or {}
    for key, env_type in _VERSION_KEYS:
        if key in versions:
            return env_type
    logger.debug("Unrecognised nREPL versions %s", sorted(versions))
    return UNKNOWN
