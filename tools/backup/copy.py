from __future__ import annotations

from typing import Any, Callable, Dict

from kaliclean.backup.manager import BackupManager


def make_copy_tool(manager: BackupManager) -> Callable[[Dict[str, Any], bool], Dict[str, Any]]:
    def run(args: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        """
        Copy sensitive files into the backup directory.
        args:
          - paths: [string, ...]
        Missing paths are skipped, not failures.
        """
        paths = args.get("paths")
        if not isinstance(paths, list) or any(not isinstance(p, str) or not p for p in paths):
            raise ValueError("backup.copy: 'paths' must be a list of non-empty strings")

        if dry_run:
            return {
                "dry_run": True,
                "expected_effects": [
                    {"kind": "backup_copy", "summary": manager.describe(p), "resources": [p]} for p in paths
                ],
            }

        stored = []
        skipped = []
        for p in paths:
            artifact = manager.backup_path(p)
            if artifact is None:
                skipped.append(p)
            else:
                stored.append(str(artifact.storage_path))
        return {"dry_run": False, "stored": stored, "skipped": skipped}

    return run
