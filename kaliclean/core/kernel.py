from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, TextIO

from kaliclean.audit.logger import AuditLogger
from kaliclean.backup.manager import BackupManager, CachedPassphrase, PassphraseSource, Runner
from kaliclean.bootstrap_tools import build_tool_registry
from kaliclean.catalog import build_default_registry
from kaliclean.config import Settings
from kaliclean.registry.operation_registry import OperationRegistry
from kaliclean.trace.trace_emitter import TraceEmitter
from kaliclean.trace.trace_store_jsonl import TraceStoreJSONL

from .errors import PreconditionMissing
from .executor import GuardedExecutor, OperationOutcome, summarize
from .gate import ConfirmationGate
from .mode import Mode
from .prompter import Prompter


@dataclass
class RunReport:
    run_id: str
    outcomes: List[OperationOutcome] = field(default_factory=list)
    disk_summary: str = ""
    log_path: Optional[Path] = None

    def outcome(self, op_id: str) -> Optional[OperationOutcome]:
        for o in self.outcomes:
            if o.op_id == op_id:
                return o
        return None

    @property
    def counts(self) -> dict:
        done, skipped, aborted = summarize(self.outcomes)
        return {"completed": done, "skipped": skipped, "aborted": aborted}


def _flag(v: bool) -> str:
    return "true" if v else "false"


class Kernel:
    """
    Run orchestration: prerequisites -> operations (gated, in order) -> summary.

    Hard rules:
    - a missing prerequisite stops the run before any operation starts.
    - every other failure stays inside its operation.
    - the summary is always produced.
    """

    def __init__(
        self,
        settings: Settings,
        mode: Mode,
        *,
        prompter: Optional[Prompter] = None,
        passphrase_source: Optional[PassphraseSource] = None,
        console: Optional[TextIO] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        runner: Runner = subprocess.run,
    ):
        self.settings = settings
        self.mode = mode
        self._which = which

        self.audit = AuditLogger(mode, settings.log_path, console=console)
        store = None if mode.no_log else TraceStoreJSONL(settings.trace_path)
        self.trace = TraceEmitter(store=store, run_id=settings.run_id)
        self.backups = BackupManager(settings.backup_dir, settings.timestamp, self.audit, runner=runner, which=which)
        self.gate = ConfirmationGate(self.audit, prompter)
        self.passphrase = passphrase_source if passphrase_source is not None else CachedPassphrase()
        self.tools = build_tool_registry(
            self.backups,
            passphrase_source=self.passphrase,
            confirm=lambda text: self.gate.confirm(text, mode),
        )
        self.executor = GuardedExecutor(
            self.tools,
            self.gate,
            self.backups,
            self.audit,
            self.trace,
            passphrase_source=self.passphrase,
            skip_operations=settings.skip_operations,
        )

    def ensure_prereqs(self) -> None:
        if os.geteuid() != 0 and self._which("sudo") is None:
            raise PreconditionMissing(
                code="prereq.sudo_missing",
                message="This tool requires 'sudo'. Please install sudo or run as root.",
            )

    def _disk_summary(self) -> str:
        # Read-only, so it is reported in dry-run too.
        try:
            out = self.tools.call("fs.usage", {"path": "/", "scope": "filesystem"}, dry_run=False)
        except OSError as e:
            return f"disk usage unavailable: {e}"
        return str(out.get("summary", ""))

    def run(self, registry: Optional[OperationRegistry] = None) -> RunReport:
        self.ensure_prereqs()
        if registry is None:
            registry = build_default_registry(self.settings)

        old_umask = os.umask(0o077)
        try:
            if not self.mode.dry_run:
                self.backups.prepare()
            self.audit.record(
                f"kali-clean started (dry-run={_flag(self.mode.dry_run)}, "
                f"dangerous={_flag(self.mode.dangerous_enabled)}, no-log={_flag(self.mode.no_log)})"
            )
            self.trace.emit(
                "run_started",
                data={
                    "dry_run": self.mode.dry_run,
                    "auto_yes": self.mode.auto_yes,
                    "dangerous_enabled": self.mode.dangerous_enabled,
                    "operations": [op.op_id for op in registry.all()],
                },
            )

            outcomes = self.executor.run(registry.all(), self.mode)
            if not self.mode.dry_run:
                self.backups.enforce_permissions()

            report = RunReport(
                run_id=self.settings.run_id,
                outcomes=outcomes,
                disk_summary=self._disk_summary(),
                log_path=self.settings.log_path if self.audit.persisting else None,
            )
            self._log_summary(report)
            self.trace.emit("run_finished", data=report.counts)
            self.audit.record("kali-clean finished")
            return report
        finally:
            os.umask(old_umask)

    def _log_summary(self, report: RunReport) -> None:
        c = report.counts
        self.audit.record("--- Summary ---")
        self.audit.record(f"completed={c['completed']} skipped={c['skipped']} aborted={c['aborted']}")
        for o in report.outcomes:
            suffix = f" ({o.reason})" if o.reason else ""
            self.audit.record(f"  {o.op_id}: {o.state.value}{suffix}")
        if report.disk_summary:
            self.audit.record(f"Disk usage: {report.disk_summary}")
        if report.log_path is not None:
            self.audit.record(f"Log file: {report.log_path}")
