from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Dict

from ._path import expand_user_path, human_size


def _tree_bytes(root: Path) -> tuple[int, int]:
    total = 0
    unreadable = 0

    def _onerror(_e: OSError) -> None:
        nonlocal unreadable
        unreadable += 1

    if not root.is_dir() or root.is_symlink():
        return root.lstat().st_size, 0
    for cur, _dirs, files in os.walk(root, onerror=_onerror):
        for f in files:
            try:
                total += (Path(cur) / f).lstat().st_size
            except OSError:
                unreadable += 1
    return total, unreadable


def run(args: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
    """
    Report disk usage (read-only).
    args:
      - path: string
      - scope: "tree" (default; size of everything under path) | "filesystem" (df-style)
    """
    path_raw = args.get("path")
    if not isinstance(path_raw, str) or not path_raw:
        raise ValueError("fs.usage: 'path' must be a non-empty string")
    scope = args.get("scope", "tree")
    if scope not in ("tree", "filesystem"):
        raise ValueError("fs.usage: 'scope' must be one of: tree|filesystem")

    path = expand_user_path(path_raw)
    if dry_run:
        return {
            "path": str(path),
            "dry_run": True,
            "expected_effects": [
                {"kind": "fs_read", "summary": f"Report disk usage of {path} ({scope})", "resources": [str(path)]}
            ],
        }
    if not path.exists():
        return {"path": str(path), "exists": False, "summary": f"{path}: not found", "dry_run": dry_run}

    if scope == "filesystem":
        du = shutil.disk_usage(path)
        summary = f"{path}: size {human_size(du.total)}, used {human_size(du.used)}, avail {human_size(du.free)}"
        return {
            "path": str(path),
            "exists": True,
            "total_bytes": du.total,
            "used_bytes": du.used,
            "free_bytes": du.free,
            "summary": summary,
            "dry_run": dry_run,
        }

    total, unreadable = _tree_bytes(path)
    summary = f"{human_size(total)}\t{path}"
    if unreadable:
        summary += f" ({unreadable} entries unreadable)"
    return {
        "path": str(path),
        "exists": True,
        "bytes": total,
        "unreadable": unreadable,
        "summary": summary,
        "dry_run": dry_run,
    }
