"""Filesystem locations (XDG state dir and logs)."""

from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "mytunnel-ctl"


def get_state_dir() -> Path:
    base = os.environ.get("XDG_STATE_HOME") or os.path.join(Path.home(), ".local", "state")
    return Path(base) / APP_NAME


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


def ensure_dirs() -> None:
    get_logs_dir().mkdir(parents=True, exist_ok=True)


def tail_lines(path: Path, count: int) -> list[str]:
    """Return the last `count` lines of a text file (empty if unreadable)."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    lines = text.splitlines()
    return lines[-count:] if count > 0 else []
