from __future__ import annotations

from typing import Any, Callable, Dict

from kaliclean.backup.manager import BackupManager, PassphraseSource


def make_archive_tool(
    manager: BackupManager,
    passphrase_source: PassphraseSource,
    confirm: Callable[[str], bool],
) -> Callable[[Dict[str, Any], bool], Dict[str, Any]]:
    def run(args: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        """
        Pack every plain backup of the directory into one encrypted archive.
        args:
          - label: string (archive name prefix)
        """
        label = args.get("label")
        if not isinstance(label, str) or not label:
            raise ValueError("backup.archive: 'label' must be a non-empty string")

        if dry_run:
            target = manager.archive_path(label)
            return {
                "dry_run": True,
                "expected_effects": [
                    {
                        "kind": "backup_archive",
                        "summary": f"would archive and encrypt {manager.backup_dir} to {target}",
                        "resources": [str(manager.backup_dir)],
                    }
                ],
            }

        artifact = manager.archive_and_encrypt(label, passphrase_source, confirm)
        return {"dry_run": False, "archive": str(artifact.storage_path) if artifact else None}

    return run
