from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class CommandDump:
    """
    Backup target produced by a command's stdout (database dump, privileged
    tar stream). `fallback_argv` is tried when `argv` fails.

    `argv` never carries its own privilege prefix. With `run_as` the command
    runs as that user (`sudo -u`, or `runuser -u` when already root); with
    `privileged` it gets `sudo` unless the process is root.
    """

    name: str
    argv: Tuple[str, ...]
    fallback_argv: Optional[Tuple[str, ...]] = None
    suffix: str = ""
    requires_binary: Optional[str] = None
    privileged: bool = False
    run_as: Optional[str] = None

    def command(self, argv: Tuple[str, ...]) -> List[str]:
        is_root = os.geteuid() == 0
        if self.run_as:
            if is_root:
                return ["runuser", "-u", self.run_as, "--", *argv]
            return ["sudo", "-u", self.run_as, *argv]
        if self.privileged and not is_root:
            return ["sudo", *argv]
        return list(argv)

    def commands(self) -> List[List[str]]:
        return [self.command(argv) for argv in (self.argv, self.fallback_argv) if argv]
