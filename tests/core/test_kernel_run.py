import io
import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from kaliclean.config import Settings
from kaliclean.core.errors import PreconditionMissing
from kaliclean.core.executor import OperationState
from kaliclean.core.kernel import Kernel
from kaliclean.core.mode import Mode
from kaliclean.registry.operation_registry import Operation, OperationRegistry, RiskTier, ToolCall


class NoPrompter:
    def __init__(self):
        self.asked = []

    def ask(self, prompt):
        self.asked.append(prompt)
        return None

    def say(self, text):
        pass


def _which_all(name):
    return f"/usr/bin/{name}"


class TestKernelRun(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.cache = self.root / "cache"
        self.cache.mkdir()
        (self.cache / "junk.bin").write_bytes(b"j" * 64)
        self.settings = Settings(backup_dir=self.root / "backups", timestamp="2024-01-01_10-00-00")
        self.console = io.StringIO()

    def tearDown(self) -> None:
        self._td.cleanup()

    def _registry(self):
        reg = OperationRegistry()
        reg.register(
            Operation(
                op_id="cache",
                description="Clean cache",
                risk_tier=RiskTier.SAFE,
                steps=(ToolCall("fs.purge", {"path": str(self.cache)}),),
            )
        )
        reg.register(
            Operation(
                op_id="broken",
                description="Broken step",
                risk_tier=RiskTier.SAFE,
                steps=(ToolCall("proc.run", {"argv": ["false"]}),),
            )
        )
        reg.register(
            Operation(
                op_id="gvm-purge",
                description="Purge GVM/OpenVAS data",
                risk_tier=RiskTier.DANGEROUS,
                keyword="PURGE-GVM",
                steps=(ToolCall("fs.purge", {"path": str(self.cache), "contents_only": False}),),
            )
        )
        return reg

    def _kernel(self, mode, **kw):
        return Kernel(self.settings, mode, prompter=NoPrompter(), console=self.console, which=_which_all, **kw)

    def test_run_completes_and_writes_private_log_and_trace(self) -> None:
        kernel = self._kernel(Mode.from_flags(yes=True))
        old = os.umask(0o022)
        try:
            report = kernel.run(self._registry())
            self.assertEqual(os.umask(0o022), 0o022)
        finally:
            os.umask(old)

        states = {o.op_id: o.state for o in report.outcomes}
        self.assertEqual(states["cache"], OperationState.COMPLETED)
        self.assertEqual(states["broken"], OperationState.ABORTED)
        self.assertEqual(states["gvm-purge"], OperationState.SKIPPED)
        self.assertEqual(report.counts, {"completed": 1, "skipped": 1, "aborted": 1})
        self.assertFalse((self.cache / "junk.bin").exists())
        self.assertTrue(self.cache.exists())

        log = self.settings.log_path.read_text(encoding="utf-8")
        self.assertIn("kali-clean started (dry-run=false, dangerous=false, no-log=false)", log)
        self.assertIn("--- Summary ---", log)
        self.assertIn("completed=1 skipped=1 aborted=1", log)
        self.assertIn("gvm-purge: skipped (dangerous_disabled)", log)
        self.assertIn("Disk usage: /:", log)
        self.assertTrue(log.rstrip().endswith("kali-clean finished"))

        backup_dir = self.settings.backup_dir
        self.assertEqual(stat.S_IMODE(backup_dir.stat().st_mode), 0o700)
        for p in backup_dir.iterdir():
            self.assertEqual(stat.S_IMODE(p.stat().st_mode) & 0o077, 0, p)

        events = [json.loads(l) for l in self.settings.trace_path.read_text(encoding="utf-8").splitlines()]
        self.assertEqual(events[0]["event_type"], "run_started")
        self.assertEqual(events[-1]["event_type"], "run_finished")

    def test_dry_run_with_no_log_touches_nothing(self) -> None:
        kernel = self._kernel(Mode(dry_run=True, auto_yes=True, dangerous_enabled=True, no_log=True))
        report = kernel.run(self._registry())
        self.assertTrue(all(o.state is OperationState.SKIPPED for o in report.outcomes))
        self.assertTrue((self.cache / "junk.bin").exists())
        self.assertFalse(self.settings.backup_dir.exists())
        self.assertIsNone(report.log_path)
        self.assertIn("--- Summary ---", self.console.getvalue())

    def test_missing_sudo_stops_before_any_operation(self) -> None:
        kernel = Kernel(
            self.settings,
            Mode.from_flags(yes=True),
            prompter=NoPrompter(),
            console=self.console,
            which=lambda name: None,
        )
        with patch("kaliclean.core.kernel.os.geteuid", return_value=1000):
            with self.assertRaises(PreconditionMissing):
                kernel.run(self._registry())
        self.assertTrue((self.cache / "junk.bin").exists())
        self.assertEqual(self.console.getvalue(), "")

    def test_root_does_not_need_sudo(self) -> None:
        kernel = Kernel(self.settings, Mode(), prompter=NoPrompter(), console=self.console, which=lambda name: None)
        with patch("kaliclean.core.kernel.os.geteuid", return_value=0):
            kernel.ensure_prereqs()

    def test_skip_operations_from_settings(self) -> None:
        self.settings = Settings(
            backup_dir=self.root / "backups", timestamp="2024-01-01_10-00-00", skip_operations=("cache",)
        )
        report = self._kernel(Mode.from_flags(yes=True, no_log=True)).run(self._registry())
        self.assertEqual(report.outcome("cache").reason, "disabled_by_config")
        self.assertTrue((self.cache / "junk.bin").exists())


if __name__ == "__main__":
    unittest.main()
