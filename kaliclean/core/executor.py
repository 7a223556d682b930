from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from kaliclean.audit.logger import AuditLogger
from kaliclean.backup.manager import BackupArtifact, BackupManager, PassphraseSource
from kaliclean.registry.operation_registry import Operation, ToolCall
from kaliclean.registry.tool_registry import ToolRegistry
from kaliclean.trace.trace_emitter import TraceEmitter

from .errors import ActionFailed, BackupError, BackupUnavailable
from .gate import Allow, ConfirmationGate, Deny, RequireTypedKeyword
from .mode import Mode


class OperationState(enum.Enum):
    PENDING = "pending"
    GATED = "gated"
    BACKING_UP = "backing_up"
    EXECUTING = "executing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


TERMINAL_STATES = (OperationState.COMPLETED, OperationState.SKIPPED, OperationState.ABORTED)


@dataclass
class OperationOutcome:
    op_id: str
    state: OperationState = OperationState.PENDING
    reason: str = ""
    transitions: List[OperationState] = field(default_factory=lambda: [OperationState.PENDING])
    artifacts: List[BackupArtifact] = field(default_factory=list)


class GuardedExecutor:
    """
    Runs operations one at a time, in order, each through
    PENDING -> GATED -> (BACKING_UP) -> EXECUTING -> COMPLETED|SKIPPED|ABORTED.

    Hard rules:
    - a backup completes strictly before the action it guards.
    - a failure never crosses an operation boundary.
    - in dry-run nothing executes; the executor only reports expected effects.
    """

    def __init__(
        self,
        tools: ToolRegistry,
        gate: ConfirmationGate,
        backups: BackupManager,
        audit: AuditLogger,
        trace: TraceEmitter,
        *,
        passphrase_source: Optional[PassphraseSource] = None,
        skip_operations: Iterable[str] = (),
    ):
        self._tools = tools
        self._gate = gate
        self._backups = backups
        self._audit = audit
        self._trace = trace
        self._passphrase = passphrase_source
        self._skip = frozenset(skip_operations)

    def run(self, operations: Iterable[Operation], mode: Mode) -> List[OperationOutcome]:
        return [self.run_operation(op, mode) for op in operations]

    def _move(self, outcome: OperationOutcome, state: OperationState, *, reason: str = "", **data) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        if reason:
            outcome.reason = reason
        self._trace.emit(
            f"operation_{state.value}",
            op_id=outcome.op_id,
            state=state.value,
            message=reason or None,
            data=data or None,
        )

    def run_operation(self, op: Operation, mode: Mode) -> OperationOutcome:
        outcome = OperationOutcome(op_id=op.op_id)
        self._audit.record(f"--- {op.op_id}: {op.description} ---")

        if op.op_id in self._skip:
            self._audit.record(f"Skipped {op.op_id} (disabled in configuration)")
            self._move(outcome, OperationState.SKIPPED, reason="disabled_by_config")
            return outcome

        if op.only_if_exists and not any(os.path.lexists(os.path.expanduser(p)) for p in op.only_if_exists):
            self._audit.record(f"No {', '.join(op.only_if_exists)} found; skipping {op.op_id}")
            self._move(outcome, OperationState.SKIPPED, reason="not_applicable")
            return outcome

        decision = self._gate.decide(op, mode)
        if isinstance(decision, RequireTypedKeyword):
            decision = self._gate.confirm_keyword(decision)
            if isinstance(decision, Deny):
                self._audit.record(f"Typed confirmation failed; aborting {op.op_id}")
        self._move(outcome, OperationState.GATED, decision="allow" if isinstance(decision, Allow) else "deny")

        if not isinstance(decision, Allow):
            if mode.dry_run:
                self._simulate(op)
            else:
                self._audit.record(f"Skipped {op.op_id}")
            self._move(outcome, OperationState.SKIPPED, reason=getattr(decision, "reason", "") or "denied")
            return outcome

        if op.requires_backup_of:
            self._move(outcome, OperationState.BACKING_UP)
            try:
                outcome.artifacts.extend(self._back_up(op))
            except BackupError as e:
                self._audit.error(f"Backup for {op.op_id} failed: {e.message}; {op.op_id} not run")
                self._move(outcome, OperationState.ABORTED, reason=e.code)
                return outcome

        self._move(outcome, OperationState.EXECUTING)
        for step in op.steps:
            try:
                failure = self._run_step(step)
            except BackupError as e:
                self._audit.error(f"{op.op_id} failed: {e.message}")
                self._move(outcome, OperationState.ABORTED, reason=e.code)
                return outcome
            if failure is None:
                continue
            if step.fatal:
                err = ActionFailed(code="action.failed", message=failure, data={"tool_id": step.tool_id})
                self._audit.error(f"{op.op_id} failed: {err.message}")
                self._move(outcome, OperationState.ABORTED, reason=err.code)
                return outcome
            self._audit.record(f"{op.op_id}: non-fatal step failed, continuing: {failure}")

        self._audit.record(f"{op.op_id} completed")
        self._move(outcome, OperationState.COMPLETED)
        return outcome

    def _back_up(self, op: Operation) -> List[BackupArtifact]:
        made: List[BackupArtifact] = []
        for target in op.requires_backup_of:
            artifact = self._backups.backup(target)
            if artifact is None:
                if op.tolerates_missing_backup:
                    continue
                raise BackupUnavailable(
                    code="backup.source_missing",
                    message=f"Nothing to back up at {target}",
                    data={"op_id": op.op_id},
                )
            if op.encrypt_backup:
                if self._passphrase is None:
                    raise BackupUnavailable(code="backup.no_passphrase_source", message="No passphrase source configured")
                artifact = self._backups.encrypt_artifact(artifact, self._passphrase)
            if not artifact.storage_path.exists():
                raise BackupUnavailable(
                    code="backup.verify_failed",
                    message=f"Backup artifact missing: {artifact.storage_path}",
                )
            self._trace.emit("backup_created", op_id=op.op_id, data={"storage_path": str(artifact.storage_path)})
            made.append(artifact)
        return made

    def _run_step(self, step: ToolCall) -> Optional[str]:
        """Returns None on success, else a human-readable failure."""
        try:
            out = self._tools.call(step.tool_id, step.args, dry_run=False)
        except BackupError:
            raise
        except Exception as e:  # noqa: BLE001
            return f"{step.tool_id}: {e}"

        argv = out.get("argv")
        if isinstance(argv, list):
            self._audit.record(f"RUN: {' '.join(argv)}" + ("" if step.log_output else " (no output)"))
        if isinstance(out.get("summary"), str):
            self._audit.record(out["summary"])
        if step.log_output:
            self._audit.record_output(str(out.get("stdout", "")))
            self._audit.record_output(str(out.get("stderr", "")))

        returncode = out.get("returncode", 0)
        if returncode != 0:
            return f"{step.tool_id} exited with status {returncode}"
        return None

    def _simulate(self, op: Operation) -> None:
        for target in op.requires_backup_of:
            self._audit.record(f"DRY-RUN: {self._backups.describe(target)}")
        for step in op.steps:
            effects: List[dict] = []
            try:
                effects = self._tools.expected_effects(step.tool_id, step.args)
            except Exception as e:  # noqa: BLE001
                self._audit.record(f"DRY-RUN: cannot describe {step.tool_id}: {e}")
            for effect in effects:
                self._audit.record(f"DRY-RUN: {effect.get('summary', step.tool_id)}")


def summarize(outcomes: Iterable[OperationOutcome]) -> Tuple[int, int, int]:
    """(completed, skipped, aborted)"""
    done = skipped = aborted = 0
    for o in outcomes:
        if o.state is OperationState.COMPLETED:
            done += 1
        elif o.state is OperationState.SKIPPED:
            skipped += 1
        elif o.state is OperationState.ABORTED:
            aborted += 1
    return done, skipped, aborted
