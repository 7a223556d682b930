from __future__ import annotations

import fnmatch
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ._path import expand_user_path, human_size


def _matches(name: str, patterns: List[str], ignore_case: bool) -> bool:
    if not patterns:
        return True
    if ignore_case:
        name = name.lower()
        return any(fnmatch.fnmatchcase(name, p.lower()) for p in patterns)
    return any(fnmatch.fnmatchcase(name, p) for p in patterns)


def _size_of(path: Path) -> int:
    try:
        if path.is_symlink() or not path.is_dir():
            return path.lstat().st_size
    except OSError:
        return 0
    total = 0
    for root, _dirs, files in os.walk(path):
        for f in files:
            try:
                total += (Path(root) / f).lstat().st_size
            except OSError:
                continue
    return total


def _candidates(
    root: Path,
    *,
    patterns: List[str],
    ignore_case: bool,
    max_depth: Optional[int],
    min_size: int,
    files_only: bool,
) -> List[Tuple[Path, int]]:
    """
    Deterministic DFS with sorted children. A matched directory is taken
    whole and not descended into. Symlinks are never followed.
    """
    out: List[Tuple[Path, int]] = []
    stack: List[Tuple[Path, int]] = [(root, 1)]
    while stack:
        cur, depth = stack.pop()
        if max_depth is not None and depth > max_depth:
            continue
        try:
            children = sorted(cur.iterdir(), key=lambda p: p.name)
        except OSError:
            continue

        dirs_to_visit: List[Path] = []
        for ch in children:
            is_dir = ch.is_dir() and not ch.is_symlink()
            if _matches(ch.name, patterns, ignore_case) and not (is_dir and files_only):
                size = _size_of(ch)
                if size >= min_size:
                    out.append((ch, size))
                    continue
            if is_dir and patterns:
                dirs_to_visit.append(ch)

        for d in reversed(dirs_to_visit):
            stack.append((d, depth + 1))
    return out


def _delete(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def run(args: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
    """
    Delete a set of paths under a root.
    args:
      - path: string (root)
      - contents_only: bool (default true; false removes the root itself when no patterns are given)
      - patterns: [glob, ...] (optional; matched against entry names at any depth)
      - ignore_case: bool (default false)
      - max_depth: int (optional; 1 means direct children only)
      - min_size_bytes: int (default 0; entries smaller are kept)
      - files_only: bool (default false)
    """
    path_raw = args.get("path")
    if not isinstance(path_raw, str) or not path_raw:
        raise ValueError("fs.purge: 'path' must be a non-empty string")

    patterns = args.get("patterns") or []
    if not isinstance(patterns, list) or any(not isinstance(p, str) or not p for p in patterns):
        raise ValueError("fs.purge: 'patterns' must be a list of non-empty strings")
    max_depth = args.get("max_depth")
    if max_depth is not None and (not isinstance(max_depth, int) or max_depth < 1):
        raise ValueError("fs.purge: 'max_depth' must be a positive integer")
    min_size = int(args.get("min_size_bytes", 0) or 0)
    contents_only = bool(args.get("contents_only", True))

    root = expand_user_path(path_raw)
    if not os.path.lexists(root):
        return {
            "path": str(root),
            "exists": False,
            "deleted": 0,
            "freed_bytes": 0,
            "summary": f"{root}: not found, nothing to delete",
            "dry_run": dry_run,
        }

    if not contents_only and not patterns:
        targets = [(root, _size_of(root))]
    else:
        if not root.is_dir():
            raise ValueError(f"fs.purge: path is not a directory: {root}")
        targets = _candidates(
            root,
            patterns=patterns,
            ignore_case=bool(args.get("ignore_case", False)),
            max_depth=max_depth if patterns else 1,
            min_size=min_size,
            files_only=bool(args.get("files_only", False)),
        )

    total = sum(size for _, size in targets)
    if dry_run:
        return {
            "path": str(root),
            "exists": True,
            "dry_run": True,
            "would_delete": len(targets),
            "would_free_bytes": total,
            "expected_effects": [
                {
                    "kind": "fs_delete",
                    "summary": f"Delete {len(targets)} entries under {root} ({human_size(total)})",
                    "resources": [str(p) for p, _ in targets],
                }
            ],
        }

    deleted = 0
    freed = 0
    errors: List[str] = []
    for p, size in targets:
        try:
            _delete(p)
            deleted += 1
            freed += size
        except OSError as e:
            errors.append(f"{p}: {e}")

    if errors:
        raise OSError(f"fs.purge: {len(errors)} of {len(targets)} entries could not be removed (first: {errors[0]})")
    return {
        "path": str(root),
        "exists": True,
        "dry_run": False,
        "deleted": deleted,
        "freed_bytes": freed,
        "summary": f"Deleted {deleted} entries under {root} ({human_size(freed)})",
    }
