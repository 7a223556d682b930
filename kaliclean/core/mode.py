from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Mode:
    """
    Process-wide run mode, built once at startup and passed explicitly.

    Hard rules:
    - auto_yes never bypasses a dangerous operation.
    - dry_run forces every gate decision to deny.
    """

    dry_run: bool = False
    auto_yes: bool = False
    quiet: bool = False
    dangerous_enabled: bool = False
    no_log: bool = False

    @classmethod
    def from_flags(cls, *, dry_run: bool = False, yes: bool = False, dangerous: bool = False, no_log: bool = False) -> "Mode":
        # --yes answers safe prompts and silences the rest.
        return cls(dry_run=dry_run, auto_yes=yes, quiet=yes, dangerous_enabled=dangerous, no_log=no_log)
