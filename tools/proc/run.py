from __future__ import annotations

import os
import subprocess
from typing import Any, Dict, List


def command_argv(args: Dict[str, Any]) -> List[str]:
    argv = args.get("argv")
    if not isinstance(argv, list) or not argv or not all(isinstance(a, str) and a for a in argv):
        raise ValueError("proc.run: 'argv' must be a non-empty list of strings")
    if args.get("privileged", False) and os.geteuid() != 0:
        return ["sudo", *argv]
    return list(argv)


def run(args: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
    """
    Run one external command (argv list, never a shell string).
    args:
      - argv: [string, ...]
      - privileged: bool (default false; prefixes sudo when not root)
    output:
      - returncode, stdout, stderr; returncode 127 when the binary is missing
    """
    argv = command_argv(args)
    printable = " ".join(argv)

    if dry_run:
        return {
            "argv": argv,
            "dry_run": True,
            "expected_effects": [{"kind": "proc_run", "summary": f"Run: {printable}", "resources": [argv[0]]}],
        }

    try:
        proc = subprocess.run(argv, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return {"argv": argv, "dry_run": False, "returncode": 127, "stdout": "", "stderr": f"{argv[0]}: command not found"}

    return {
        "argv": argv,
        "dry_run": False,
        "returncode": proc.returncode,
        "stdout": proc.stdout or "",
        "stderr": proc.stderr or "",
    }
