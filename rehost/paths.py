"""Shared filesystem paths and helpers for rehost."""

from __future__ import annotations

import os
import re
from hashlib import sha256
from pathlib import Path


def _xdg_path(env_var: str, fallback: Path) -> Path:
    raw = os.environ.get(env_var)
    if raw:
        return Path(raw).expanduser()
    return fallback


def config_home() -> Path:
    return _xdg_path("XDG_CONFIG_HOME", Path.home() / ".config") / "rehost"


def state_home() -> Path:
    return _xdg_path("XDG_STATE_HOME", Path.home() / ".local/state") / "rehost"


_SAFE_PATH_COMPONENT_RE = re.compile(r"[^A-Za-z0-9._-]")


def safe_path_component(raw: str | None, *, fallback: str = "item") -> str:
    """Return a filesystem-safe path component derived from raw input."""
    if raw is None:
        raw = ""
    value = str(raw).strip()
    if not value:
        value = fallback
    has_sep = any(sep in value for sep in (os.sep, os.altsep) if sep)
    safe = _SAFE_PATH_COMPONENT_RE.sub("_", value)
    if safe in {"", ".", ".."}:
        safe = fallback
    if has_sep or safe != value:
        digest = sha256(value.encode("utf-8")).hexdigest()[:12]
        prefix = safe.strip("._-") or fallback
        prefix = prefix[:32]
        return f"{prefix}-{digest}"
    return safe


__all__ = [
    "config_home",
    "state_home",
    "safe_path_component",
]
