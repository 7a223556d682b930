from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TextIO

from kaliclean.core.mode import Mode


LINE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    message: str
    persisted: bool

    def format(self) -> str:
        return f"{self.timestamp.strftime(LINE_TIME_FORMAT)} - {self.message}"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    os.chmod(path, 0o700)


def append_private(path: Path, text: str) -> None:
    """
    Append to `path`, creating it 0600. Permissions are re-applied on every
    write since the file may have been created by something else.
    """
    ensure_private_dir(path.parent)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, text.encode("utf-8"))
    finally:
        os.close(fd)


class AuditLogger:
    """
    Append-only audit log.

    - no_log: console only, nothing persisted.
    - otherwise: one line per entry appended to `log_path` and mirrored to the console.

    Persistence failures never fail the run: the logger falls back to
    console-only output for the rest of the run.
    """

    def __init__(
        self,
        mode: Mode,
        log_path: Path,
        *,
        console: Optional[TextIO] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._mode = mode
        self._path = log_path
        self._console = console
        self._clock = clock
        self._sink_failed = False
        self._entries: list[LogEntry] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def persisting(self) -> bool:
        return not self._mode.no_log and not self._sink_failed

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def messages(self) -> list[str]:
        return [e.message for e in self._entries]

    def _out(self) -> TextIO:
        return self._console if self._console is not None else sys.stdout

    def _persist(self, text: str) -> bool:
        if not self.persisting:
            return False
        try:
            append_private(self._path, text)
            return True
        except OSError as e:
            self._sink_failed = True
            print(f"warning: cannot write log file {self._path} ({e}); logging to console only", file=sys.stderr)
            return False

    def record(self, message: str) -> LogEntry:
        ts = self._clock()
        line = f"{ts.strftime(LINE_TIME_FORMAT)} - {message}"
        persisted = self._persist(line + "\n")
        entry = LogEntry(timestamp=ts, message=message, persisted=persisted)
        self._entries.append(entry)
        print(line, file=self._out(), flush=True)
        return entry

    def error(self, message: str) -> LogEntry:
        return self.record(f"ERROR: {message}")

    def record_output(self, text: str) -> None:
        """Command output: always shown, persisted only when logging is on."""
        if not text:
            return
        if not text.endswith("\n"):
            text += "\n"
        self._out().write(text)
        self._out().flush()
        self._persist(text)
