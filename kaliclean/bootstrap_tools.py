from __future__ import annotations

from typing import Any, Callable, Dict

from kaliclean.backup.manager import BackupManager, PassphraseSource
from kaliclean.registry.tool_registry import ToolRegistry
from tools.backup.archive import make_archive_tool
from tools.backup.copy import make_copy_tool
from tools.fs.purge import run as fs_purge
from tools.fs.usage import run as fs_usage
from tools.proc.run import run as proc_run


_STRING_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}


def build_tool_registry(
    manager: BackupManager,
    *,
    passphrase_source: PassphraseSource,
    confirm: Callable[[str], bool],
) -> ToolRegistry:
    """
    Register the capability tools operations are allowed to use.
    """
    reg = ToolRegistry()

    def reg_tool(tool_id: str, title: str, side_effects: str, destructive: bool, args_schema: Dict[str, Any], impl):
        reg.register(
            {
                "tool_id": tool_id,
                "version": "0.2.0",
                "title": title,
                "side_effects": side_effects,
                "destructive": destructive,
                "supports_dry_run": True,
                "args_schema": args_schema,
            },
            impl,
        )

    reg_tool(
        "proc.run",
        "Run an external command",
        "process",
        True,
        {
            "type": "object",
            "additionalProperties": False,
            "properties": {"argv": {**_STRING_LIST, "minItems": 1}, "privileged": {"type": "boolean"}},
            "required": ["argv"],
        },
        proc_run,
    )
    reg_tool(
        "fs.purge",
        "Delete a path set",
        "filesystem",
        True,
        {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "path": {"type": "string", "minLength": 1},
                "contents_only": {"type": "boolean"},
                "patterns": _STRING_LIST,
                "ignore_case": {"type": "boolean"},
                "max_depth": {"type": "integer", "minimum": 1},
                "min_size_bytes": {"type": "integer", "minimum": 0},
                "files_only": {"type": "boolean"},
            },
            "required": ["path"],
        },
        fs_purge,
    )
    reg_tool(
        "fs.usage",
        "Report disk usage",
        "none",
        False,
        {
            "type": "object",
            "additionalProperties": False,
            "properties": {"path": {"type": "string", "minLength": 1}, "scope": {"enum": ["tree", "filesystem"]}},
            "required": ["path"],
        },
        fs_usage,
    )
    reg_tool(
        "backup.copy",
        "Copy sensitive files into the backup directory",
        "backup",
        False,
        {
            "type": "object",
            "additionalProperties": False,
            "properties": {"paths": _STRING_LIST},
            "required": ["paths"],
        },
        make_copy_tool(manager),
    )
    reg_tool(
        "backup.archive",
        "Archive and encrypt the backup directory",
        "backup",
        False,
        {
            "type": "object",
            "additionalProperties": False,
            "properties": {"label": {"type": "string", "minLength": 1}},
            "required": ["label"],
        },
        make_archive_tool(manager, passphrase_source, confirm),
    )

    return reg
