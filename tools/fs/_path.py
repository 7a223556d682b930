from __future__ import annotations

import os
from pathlib import Path


def expand_user_path(p: str) -> Path:
    # Expand ~ and env vars but do not resolve: a symlinked root must be
    # handled as the link itself.
    return Path(os.path.abspath(os.path.expandvars(os.path.expanduser(p))))


def human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{int(size)}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{n}B"
