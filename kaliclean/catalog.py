from __future__ import annotations

from typing import Any, Dict, List

from kaliclean.backup.targets import CommandDump
from kaliclean.config import Settings
from kaliclean.registry.operation_registry import Operation, OperationRegistry, RiskTier, ToolCall


MIB = 1024 * 1024

POSTGRES_DIR = "/var/lib/postgresql"
GVM_DIR = "/var/lib/gvm"


def _cmd(*argv: str, privileged: bool = True, fatal: bool = True, log_output: bool = True) -> ToolCall:
    args: Dict[str, Any] = {"argv": list(argv)}
    if privileged:
        args["privileged"] = True
    return ToolCall("proc.run", args, fatal=fatal, log_output=log_output)


def _purge(path: str, **kw: Any) -> ToolCall:
    return ToolCall("fs.purge", {"path": path, **kw})


def _report_space(op_id: str, description: str) -> Operation:
    return Operation(
        op_id=op_id,
        description=description,
        risk_tier=RiskTier.SAFE,
        steps=(
            _cmd("df", "-h", privileged=False, fatal=False),
            _cmd("du", "-sh", POSTGRES_DIR, fatal=False),
        ),
    )


def default_operations(settings: Settings) -> List[Operation]:
    """
    The built-in cleanup sequence, in execution order.

    The last two entries depend on everything before them: the archive step
    packs every backup the earlier operations left in the backup directory.
    """
    cache = str(settings.cache_dir)
    ops: List[Operation] = [
        Operation(
            op_id="backup-sensitive-files",
            description="Back up sensitive configuration files",
            risk_tier=RiskTier.SAFE,
            steps=(ToolCall("backup.copy", {"paths": list(settings.sensitive_files)}),),
        ),
        _report_space("report-space", "Disk usage before cleanup"),
        Operation(
            op_id="apt-clean",
            description="Clean apt package cache and remove unused packages",
            risk_tier=RiskTier.SAFE,
            steps=(
                _cmd("apt-get", "clean"),
                _cmd("apt-get", "autoclean"),
                _cmd("apt-get", "autoremove", "-y"),
            ),
        ),
        Operation(
            op_id="var-cache",
            description="Clear /var/cache (apt cache etc.)?",
            risk_tier=RiskTier.CONFIRM,
            steps=(
                _cmd("du", "-sh", "/var/cache", fatal=False),
                _cmd("find", "/var/cache/apt/archives", "-mindepth", "1", "-maxdepth", "1", "-type", "f", "-delete"),
                _cmd("find", "/var/cache", "-mindepth", "1", "-maxdepth", "1", "-exec", "rm", "-rf", "{}", "+", fatal=False),
            ),
        ),
        Operation(
            op_id="journal-vacuum",
            description=f"Vacuum journal logs to {settings.journal_vacuum_size}? This will permanently remove old logs.",
            risk_tier=RiskTier.CONFIRM,
            steps=(_cmd("journalctl", f"--vacuum-size={settings.journal_vacuum_size}"),),
        ),
        Operation(
            op_id="var-log",
            description="Rotate and remove old /var/log files?",
            risk_tier=RiskTier.CONFIRM,
            steps=(
                _cmd("du", "-sh", "/var/log", fatal=False),
                _cmd("journalctl", "--rotate", fatal=False),
                _cmd("journalctl", f"--vacuum-time={settings.journal_vacuum_time}", fatal=False),
                _cmd("find", "/var/log", "-type", "f", "-name", "*.gz", "-delete", fatal=False),
                _cmd("find", "/var/log", "-type", "f", "-name", "*.[0-9]", "-delete", fatal=False),
            ),
        ),
        Operation(
            op_id="thumbnails",
            description="Clean thumbnail cache",
            risk_tier=RiskTier.SAFE,
            steps=(_purge(f"{cache}/thumbnails"),),
        ),
        Operation(
            op_id="firefox-cache",
            description=f"Clear Firefox cache ({cache}/mozilla)?",
            risk_tier=RiskTier.CONFIRM,
            only_if_exists=(f"{cache}/mozilla",),
            steps=(_purge(f"{cache}/mozilla"),),
        ),
        Operation(
            op_id="burp-tmp",
            description=f"Clean BurpSuite temp/log files in {settings.burp_dir}? (keeps config)",
            risk_tier=RiskTier.CONFIRM,
            only_if_exists=(str(settings.burp_dir),),
            steps=(
                _purge(str(settings.burp_dir), patterns=["*.tmp", "*.log", "*.bak", "project-backup*"], files_only=True),
            ),
        ),
        Operation(
            op_id="downloads-installers",
            description="Delete large known installers in Downloads (e.g. burpsuite, Nessus .deb, ISOs)?",
            risk_tier=RiskTier.CONFIRM,
            only_if_exists=(str(settings.downloads_dir),),
            steps=(
                _purge(
                    str(settings.downloads_dir),
                    patterns=["*burp*", "*.deb", "*.iso", "*.zip", "*.tar.gz"],
                    ignore_case=True,
                    max_depth=1,
                    # strictly larger than 1 MiB, like find -size +1M
                    min_size_bytes=MIB + 1,
                    files_only=True,
                ),
            ),
        ),
        Operation(
            op_id="go-workspace",
            description=f"Remove entire {settings.go_workspace} workspace (delete all Go binaries/packages)?",
            risk_tier=RiskTier.CONFIRM,
            only_if_exists=(str(settings.go_workspace),),
            steps=(_purge(str(settings.go_workspace), contents_only=False),),
        ),
        Operation(
            op_id="msfdb-reset",
            description="Reset the Metasploit database",
            risk_tier=RiskTier.DANGEROUS,
            keyword="RESET-MSFDB",
            consequence="You are about to RESET the Metasploit DB (this is irreversible).",
            only_if_exists=(POSTGRES_DIR,),
            requires_backup_of=(
                CommandDump(
                    name="msfdb_backup",
                    argv=("pg_dump", "msf"),
                    fallback_argv=("pg_dumpall",),
                    suffix=".sql",
                    requires_binary="pg_dump",
                    run_as="postgres",
                ),
            ),
            encrypt_backup=True,
            steps=(
                _cmd("msfdb", "stop", fatal=False),
                _cmd("msfdb", "delete", fatal=False),
                _cmd("msfdb", "init", fatal=False),
            ),
        ),
        Operation(
            op_id="gvm-purge",
            description="Purge GVM/OpenVAS data",
            risk_tier=RiskTier.DANGEROUS,
            keyword="PURGE-GVM",
            consequence="You are about to PURGE GVM/OpenVAS data (this will remove scan results and feeds).",
            only_if_exists=(GVM_DIR,),
            requires_backup_of=(
                CommandDump(
                    name="gvm_backup",
                    argv=("tar", "-C", "/var/lib", "-czf", "-", "gvm"),
                    suffix=".tar.gz",
                    privileged=True,
                ),
            ),
            encrypt_backup=True,
            steps=(
                _cmd("find", GVM_DIR, "-mindepth", "1", "-maxdepth", "1", "-exec", "rm", "-rf", "{}", "+"),
                _cmd("gvm-setup", fatal=False),
            ),
        ),
        Operation(
            op_id="encrypt-backups",
            description="Archive and encrypt backups",
            risk_tier=RiskTier.SAFE,
            steps=(ToolCall("backup.archive", {"label": settings.archive_label}),),
        ),
        _report_space("report-space-final", "Disk usage after cleanup"),
    ]
    return ops


def build_default_registry(settings: Settings) -> OperationRegistry:
    reg = OperationRegistry()
    for op in default_operations(settings):
        reg.register(op)
    return reg
