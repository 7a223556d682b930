from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from kaliclean.audit.logger import AuditLogger
from kaliclean.backup.manager import BackupManager
from kaliclean.bootstrap_tools import build_tool_registry
from kaliclean.catalog import build_default_registry
from kaliclean.config import Settings, default_config_path, load_settings
from kaliclean.contract_store import ContractStore
from kaliclean.core.errors import KaliCleanError
from kaliclean.core.kernel import Kernel
from kaliclean.core.mode import Mode
from kaliclean.resources import schemas_dir
from kaliclean.trace.replay import Replay


VERSION = "0.2.0"

_COMMANDS = ("run", "list-operations", "list-tools", "check-config", "show-trace")


def _format_cli_error(e: Exception) -> str:
    """
    Print-friendly error formatting for CLI commands.
    - Always includes code/message (via __str__) when it's a KaliCleanError
    - Includes structured `data` payload when present (e.g. config validation errors)
    """
    if isinstance(e, KaliCleanError) and isinstance(e.data, dict) and e.data:
        return str(e) + "\n" + json.dumps(e.data, ensure_ascii=False, indent=2)
    return str(e)


def _settings(args: argparse.Namespace) -> Settings:
    config = Path(args.config) if getattr(args, "config", None) else None
    return load_settings(config, backup_dir=getattr(args, "backup_dir", None))


def cmd_run(args: argparse.Namespace) -> int:
    mode = Mode.from_flags(dry_run=args.dry_run, yes=args.yes, dangerous=args.dangerous, no_log=args.no_log)
    settings = _settings(args)
    kernel = Kernel(settings, mode)
    # Per-operation failures are reported in the log only.
    kernel.run()
    return 0


def cmd_list_operations(args: argparse.Namespace) -> int:
    registry = build_default_registry(_settings(args))
    ops = registry.list_operations()
    if args.json:
        print(json.dumps(ops, ensure_ascii=False, indent=2))
    else:
        for op in ops:
            keyword = f" (keyword: {op['keyword']})" if op.get("keyword") else ""
            print("{op_id} [{tier}] - {desc}{kw}".format(op_id=op["op_id"], tier=op["risk_tier"], desc=op["description"], kw=keyword))
    return 0


def cmd_list_tools(args: argparse.Namespace) -> int:
    settings = _settings(args)
    audit = AuditLogger(Mode(no_log=True), settings.log_path)
    manager = BackupManager(settings.backup_dir, settings.timestamp, audit)
    tools = build_tool_registry(manager, passphrase_source=lambda: "", confirm=lambda _text: False)
    tool_defs = tools.list_tools()
    if args.json:
        print(json.dumps(tool_defs, ensure_ascii=False, indent=2))
    else:
        for t in tool_defs:
            print("{tool_id} - {title}".format(tool_id=t.get("tool_id"), title=t.get("title")))
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    store = ContractStore(schemas_dir())
    store.load()
    schema_errors = store.check_schemas()
    if schema_errors:
        print("Schema validation failed:")
        for name, err in schema_errors:
            print("- {}: {}".format(name, err))
        return 1

    path = Path(args.config) if args.config else default_config_path()
    settings = _settings(args)
    print(f"OK: {path if path.exists() else 'built-in defaults'}")
    print(f"backup_dir: {settings.backup_dir}")
    if settings.skip_operations:
        print(f"skip_operations: {', '.join(settings.skip_operations)}")
    return 0


def cmd_show_trace(args: argparse.Namespace) -> int:
    replay = Replay(Path(args.trace))
    events = replay.select(event_type=args.event_type, op_id=args.op_id)

    if args.tail is not None and args.tail >= 0:
        events = events[-args.tail :] if args.tail else []

    for e in events:
        if args.pretty:
            print(json.dumps(e, ensure_ascii=False, indent=2))
        else:
            print(json.dumps(e, ensure_ascii=False))
    return 0


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help=f"Path to YAML config (default: {default_config_path()})")
    p.add_argument("--backup-dir", help="Backup/log directory (overrides config)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kali-clean", description="Guarded disk cleanup for Kali hosts")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the cleanup sequence (default command)")
    p_run.add_argument("--dry-run", action="store_true", help="Show what would be done; change nothing")
    p_run.add_argument("-y", "--yes", action="store_true", help="Assume yes for non-dangerous confirmations")
    p_run.add_argument("--dangerous", action="store_true", help="Enable dangerous operations (each still needs its typed keyword)")
    p_run.add_argument("--no-log", action="store_true", help="Do not write a log file (console only)")
    _add_config_args(p_run)
    p_run.set_defaults(func=cmd_run)

    p_ops = sub.add_parser("list-operations", help="List the cleanup operations in execution order")
    p_ops.add_argument("--json", action="store_true", help="Output JSON")
    _add_config_args(p_ops)
    p_ops.set_defaults(func=cmd_list_operations)

    p_tools = sub.add_parser("list-tools", help="List the capability tools operations may call")
    p_tools.add_argument("--json", action="store_true", help="Output JSON")
    _add_config_args(p_tools)
    p_tools.set_defaults(func=cmd_list_tools)

    p_check = sub.add_parser("check-config", help="Validate the config schema and the YAML config")
    _add_config_args(p_check)
    p_check.set_defaults(func=cmd_check_config)

    p_show_trace = sub.add_parser("show-trace", help="Show trace events from a JSONL file")
    p_show_trace.add_argument("--trace", required=True, help="Trace path (jsonl)")
    p_show_trace.add_argument("--event-type", help="Filter by event_type")
    p_show_trace.add_argument("--op-id", help="Filter by operation id")
    p_show_trace.add_argument("--tail", type=int, help="Show only last N events")
    p_show_trace.add_argument("--pretty", action="store_true", help="Pretty-print each event as JSON")
    p_show_trace.set_defaults(func=cmd_show_trace)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    # Bare flags (or nothing) mean `run`.
    if not args or (args[0] not in _COMMANDS and args[0] not in ("-h", "--help", "--version")):
        args.insert(0, "run")

    ns = build_parser().parse_args(args)
    try:
        return int(ns.func(ns))
    except KaliCleanError as e:
        print(_format_cli_error(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
