import io
import stat
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from kaliclean.audit.logger import AuditLogger
from kaliclean.backup.manager import BackupManager
from kaliclean.backup.targets import CommandDump
from kaliclean.core.executor import GuardedExecutor, OperationState, summarize
from kaliclean.core.gate import ConfirmationGate
from kaliclean.core.mode import Mode
from kaliclean.registry.operation_registry import Operation, RiskTier, ToolCall
from kaliclean.registry.tool_registry import ToolRegistry
from kaliclean.trace.trace_emitter import TraceEmitter
from tools.backup.archive import make_archive_tool
from tools.fs.purge import run as fs_purge


class ScriptedPrompter:
    def __init__(self, answers=()):
        self.answers = list(answers)
        self.asked = []

    def ask(self, prompt):
        self.asked.append(prompt)
        return self.answers.pop(0) if self.answers else None

    def say(self, text):
        pass


class FakeRunner:
    """Stands in for subprocess.run for dumps (stdout=file) and gpg (-o out)."""

    def __init__(self, events, *, dump_ok=True, gpg_ok=True):
        self.events = events
        self.dump_ok = dump_ok
        self.gpg_ok = gpg_ok
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        if "-o" in argv:
            self.events.append("encrypt")
            if not self.gpg_ok:
                return SimpleNamespace(returncode=2)
            out = Path(argv[argv.index("-o") + 1])
            out.write_bytes(b"encrypted:" + kwargs["input"])
            return SimpleNamespace(returncode=0)
        self.events.append("backup")
        if not self.dump_ok:
            return SimpleNamespace(returncode=1)
        kwargs["stdout"].write(b"-- dump --\n")
        return SimpleNamespace(returncode=0)


def _schema(props=None):
    return {"type": "object", "properties": props or {}}


class TestGuardedExecutor(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.backup_dir = self.root / "backups"
        self.events = []
        self.console = io.StringIO()

    def tearDown(self) -> None:
        self._td.cleanup()

    def _build(self, mode, *, answers=(), runner=None, which=None, skip=()):
        self.audit = AuditLogger(mode, self.backup_dir / "run.log", console=self.console)
        self.trace = TraceEmitter(store=None, run_id="run_test")
        self.runner = runner or FakeRunner(self.events)
        self.backups = BackupManager(
            self.backup_dir,
            "2024-01-01_10-00-00",
            self.audit,
            runner=self.runner,
            which=which or (lambda name: f"/usr/bin/{name}"),
        )
        self.prompter = ScriptedPrompter(answers)
        gate = ConfirmationGate(self.audit, self.prompter)

        self.tools = ToolRegistry()

        def record(args, dry_run):
            if dry_run:
                return {"dry_run": True, "expected_effects": [{"summary": f"would {args.get('what', 'act')}"}]}
            self.events.append(args.get("what", "act"))
            return {"dry_run": False, "returncode": args.get("rc", 0), "stdout": "", "stderr": ""}

        def boom(args, dry_run):
            if dry_run:
                return {"dry_run": True, "expected_effects": []}
            self.events.append("boom")
            raise OSError("disk on fire")

        self.tools.register({"tool_id": "test.record", "args_schema": _schema()}, record)
        self.tools.register({"tool_id": "test.boom", "args_schema": _schema()}, boom)
        self.tools.register(
            {"tool_id": "fs.purge", "args_schema": _schema({"path": {"type": "string"}})},
            fs_purge,
        )
        self.executor = GuardedExecutor(
            self.tools,
            gate,
            self.backups,
            self.audit,
            self.trace,
            passphrase_source=lambda: "s3cret",
            skip_operations=skip,
        )

    def _gvm_purge(self, **kw):
        fields = dict(
            op_id="gvm-purge",
            description="Purge GVM/OpenVAS data",
            risk_tier=RiskTier.DANGEROUS,
            keyword="PURGE-GVM",
            requires_backup_of=(CommandDump(name="gvm_backup", argv=("tar", "-czf", "-", "gvm"), suffix=".tar.gz"),),
            steps=(ToolCall("test.record", {"what": "purge"}),),
        )
        fields.update(kw)
        return Operation(**fields)

    def test_failure_is_isolated_to_its_operation(self) -> None:
        self._build(Mode())
        ops = [
            Operation(op_id="first", description="first", risk_tier=RiskTier.SAFE, steps=(ToolCall("test.boom"),)),
            Operation(
                op_id="second",
                description="second",
                risk_tier=RiskTier.SAFE,
                steps=(ToolCall("test.record", {"what": "second"}),),
            ),
        ]
        outcomes = self.executor.run(ops, Mode())
        self.assertEqual([o.state for o in outcomes], [OperationState.ABORTED, OperationState.COMPLETED])
        self.assertEqual(outcomes[0].reason, "action.failed")
        self.assertEqual(self.events, ["boom", "second"])
        self.assertEqual(summarize(outcomes), (1, 0, 1))

    def test_non_fatal_step_failure_continues(self) -> None:
        self._build(Mode())
        op = Operation(
            op_id="journal",
            description="journal",
            risk_tier=RiskTier.SAFE,
            steps=(
                ToolCall("test.record", {"what": "rotate", "rc": 1}, fatal=False),
                ToolCall("test.record", {"what": "vacuum"}),
            ),
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.COMPLETED)
        self.assertEqual(self.events, ["rotate", "vacuum"])
        self.assertTrue(any("non-fatal step failed" in m for m in self.audit.messages()))

    def test_fatal_non_zero_exit_aborts_remaining_steps(self) -> None:
        self._build(Mode())
        op = Operation(
            op_id="apt",
            description="apt",
            risk_tier=RiskTier.SAFE,
            steps=(ToolCall("test.record", {"what": "clean", "rc": 100}), ToolCall("test.record", {"what": "after"})),
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.ABORTED)
        self.assertEqual(self.events, ["clean"])

    def test_dangerous_disabled_is_skipped_with_auto_yes(self) -> None:
        mode = Mode.from_flags(yes=True)
        self._build(mode)
        outcome = self.executor.run_operation(self._gvm_purge(), mode)
        self.assertEqual(outcome.state, OperationState.SKIPPED)
        self.assertEqual(outcome.reason, "dangerous_disabled")
        self.assertEqual(outcome.artifacts, [])
        self.assertEqual(self.events, [])
        self.assertTrue(any("disabled unless --dangerous is passed" in m for m in self.audit.messages()))
        self.assertFalse(self.backup_dir.exists() and any(self.backup_dir.glob("gvm_backup*")))

    def test_typed_keyword_backs_up_before_action(self) -> None:
        mode = Mode.from_flags(dangerous=True)
        self._build(mode, answers=["PURGE-GVM"])
        outcome = self.executor.run_operation(self._gvm_purge(), mode)
        self.assertEqual(outcome.state, OperationState.COMPLETED)
        self.assertEqual(self.events, ["backup", "purge"])
        self.assertEqual(
            outcome.transitions,
            [
                OperationState.PENDING,
                OperationState.GATED,
                OperationState.BACKING_UP,
                OperationState.EXECUTING,
                OperationState.COMPLETED,
            ],
        )
        self.assertEqual(len(outcome.artifacts), 1)
        artifact = outcome.artifacts[0].storage_path
        self.assertEqual(artifact.name, "gvm_backup_2024-01-01_10-00-00.tar.gz")
        self.assertTrue(artifact.exists())
        self.assertEqual(stat.S_IMODE(artifact.stat().st_mode), 0o600)

    def test_backup_failure_means_action_never_runs(self) -> None:
        mode = Mode.from_flags(dangerous=True)
        self._build(mode, answers=["PURGE-GVM"], runner=FakeRunner(self.events, dump_ok=False))
        outcome = self.executor.run_operation(self._gvm_purge(), mode)
        self.assertEqual(outcome.state, OperationState.ABORTED)
        self.assertEqual(outcome.reason, "backup.dump_failed")
        self.assertNotIn("purge", self.events)
        self.assertNotIn(OperationState.EXECUTING, outcome.transitions)

    def test_keyword_mismatch_skips_without_backup(self) -> None:
        mode = Mode.from_flags(dangerous=True)
        self._build(mode, answers=["purge-gvm"])
        outcome = self.executor.run_operation(self._gvm_purge(), mode)
        self.assertEqual(outcome.state, OperationState.SKIPPED)
        self.assertEqual(outcome.reason, "keyword_mismatch")
        self.assertEqual(self.events, [])
        self.assertTrue(any("Typed confirmation failed" in m for m in self.audit.messages()))

    def test_encrypted_backup_replaces_plaintext(self) -> None:
        mode = Mode.from_flags(dangerous=True)
        self._build(mode, answers=["PURGE-GVM"])
        outcome = self.executor.run_operation(self._gvm_purge(encrypt_backup=True), mode)
        self.assertEqual(outcome.state, OperationState.COMPLETED)
        self.assertEqual(self.events, ["backup", "encrypt", "purge"])
        artifact = outcome.artifacts[0]
        self.assertTrue(artifact.encrypted)
        self.assertTrue(artifact.storage_path.name.endswith(".tar.gz.gpg"))
        self.assertFalse((self.backup_dir / "gvm_backup_2024-01-01_10-00-00.tar.gz").exists())
        # Passphrase goes through stdin, never argv.
        gpg_argv, gpg_kwargs = self.runner.calls[-1]
        self.assertNotIn("s3cret", " ".join(gpg_argv))
        self.assertEqual(gpg_kwargs["input"], b"s3cret\n")

    def test_missing_gpg_aborts_and_keeps_plaintext(self) -> None:
        mode = Mode.from_flags(dangerous=True)
        which = lambda name: None if name == "gpg" else f"/usr/bin/{name}"  # noqa: E731
        self._build(mode, answers=["PURGE-GVM"], which=which)
        outcome = self.executor.run_operation(self._gvm_purge(encrypt_backup=True), mode)
        self.assertEqual(outcome.state, OperationState.ABORTED)
        self.assertEqual(outcome.reason, "backup.gpg_missing")
        self.assertNotIn("purge", self.events)
        self.assertTrue((self.backup_dir / "gvm_backup_2024-01-01_10-00-00.tar.gz").exists())

    def test_config_skip_happens_before_gate(self) -> None:
        self._build(Mode(), answers=["y"], skip=("var-cache",))
        op = Operation(
            op_id="var-cache",
            description="Clear /var/cache?",
            risk_tier=RiskTier.CONFIRM,
            steps=(ToolCall("test.record"),),
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.SKIPPED)
        self.assertEqual(outcome.reason, "disabled_by_config")
        self.assertEqual(self.prompter.asked, [])
        self.assertEqual(self.events, [])

    def test_only_if_exists_skips_missing_target(self) -> None:
        self._build(Mode())
        op = Operation(
            op_id="firefox-cache",
            description="Clear Firefox cache?",
            risk_tier=RiskTier.CONFIRM,
            only_if_exists=(str(self.root / "mozilla"),),
            steps=(ToolCall("test.record"),),
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.SKIPPED)
        self.assertEqual(outcome.reason, "not_applicable")
        self.assertEqual(self.prompter.asked, [])

    def test_declined_prompt_skips(self) -> None:
        self._build(Mode(), answers=["n"])
        op = Operation(
            op_id="var-log", description="Rotate logs?", risk_tier=RiskTier.CONFIRM, steps=(ToolCall("test.record"),)
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.SKIPPED)
        self.assertEqual(outcome.reason, "declined")
        self.assertEqual(self.events, [])

    def test_dry_run_changes_nothing(self) -> None:
        mode = Mode(dry_run=True, auto_yes=True, dangerous_enabled=True, no_log=True)
        self._build(mode)
        cache = self.root / "cache"
        cache.mkdir()
        (cache / "a.bin").write_bytes(b"x" * 10)
        ops = [
            Operation(
                op_id="thumbnails",
                description="Clean thumbnail cache",
                risk_tier=RiskTier.SAFE,
                steps=(ToolCall("fs.purge", {"path": str(cache)}),),
            ),
            self._gvm_purge(),
        ]
        outcomes = self.executor.run(ops, mode)
        self.assertEqual([o.state for o in outcomes], [OperationState.SKIPPED, OperationState.SKIPPED])
        self.assertTrue(all(o.reason == "dry_run" for o in outcomes))
        self.assertTrue((cache / "a.bin").exists())
        self.assertFalse(self.backup_dir.exists())
        self.assertEqual(self.events, [])
        msgs = self.audit.messages()
        self.assertTrue(any(m.startswith("DRY-RUN: Delete 1 entries under") for m in msgs))
        self.assertTrue(any(m.startswith("DRY-RUN: would dump `tar -czf - gvm`") for m in msgs))
        self.assertIn("DRY-RUN: would purge", msgs)

    def test_archive_encryption_error_keeps_its_code(self) -> None:
        which = lambda name: None if name == "gpg" else f"/usr/bin/{name}"  # noqa: E731
        self._build(Mode(), which=which)
        self.tools.register(
            {"tool_id": "backup.archive", "args_schema": _schema({"label": {"type": "string"}})},
            make_archive_tool(self.backups, lambda: "s3cret", lambda question: True),
        )
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        plain = self.backup_dir / "hosts_2024-01-01_10-00-00"
        plain.write_text("127.0.0.1 localhost\n", encoding="utf-8")
        op = Operation(
            op_id="encrypt-backups",
            description="Archive and encrypt backups",
            risk_tier=RiskTier.SAFE,
            steps=(ToolCall("backup.archive", {"label": "kali-clean-backups"}),),
        )
        outcome = self.executor.run_operation(op, Mode())
        self.assertEqual(outcome.state, OperationState.ABORTED)
        self.assertEqual(outcome.reason, "backup.gpg_missing")
        self.assertTrue(plain.exists())

    def test_transitions_are_traced(self) -> None:
        self._build(Mode())
        op = Operation(op_id="safe", description="safe", risk_tier=RiskTier.SAFE, steps=(ToolCall("test.record"),))
        self.executor.run_operation(op, Mode())
        states = [e["state"] for e in self.trace.events if e.get("op_id") == "safe"]
        self.assertEqual(states, ["gated", "executing", "completed"])
        gated = [e for e in self.trace.events if e["event_type"] == "operation_gated"][0]
        self.assertEqual(gated["data"], {"decision": "allow"})


if __name__ == "__main__":
    unittest.main()
