from __future__ import annotations

from typing import Any, Callable, List

import jsonschema

from kaliclean.core.errors import ValidationError


ToolFunc = Callable[[dict[str, Any], bool], dict[str, Any]]


class ToolRegistry:
    """
    Registry for capability tools (run external command, purge path set,
    back up a path, ...) and their metadata.

    Every tool follows the same calling convention: `impl(args, dry_run)`.
    With dry_run=True a tool must not mutate anything and reports
    `expected_effects` instead.
    """

    def __init__(self) -> None:
        self._defs: dict[str, dict[str, Any]] = {}
        self._impls: dict[str, ToolFunc] = {}

    def register(self, tool_def: dict[str, Any], impl: ToolFunc) -> None:
        tool_id = tool_def["tool_id"]
        if tool_id in self._defs:
            raise ValidationError(code="tool.duplicate", message=f"Duplicate tool_id: {tool_id}")
        self._defs[tool_id] = tool_def
        self._impls[tool_id] = impl

    def get(self, tool_id: str) -> dict[str, Any] | None:
        return self._defs.get(tool_id)

    def validate_args(self, tool_id: str, args: dict[str, Any]) -> None:
        tool_def = self._defs.get(tool_id)
        if tool_def is None:
            raise ValidationError(code="tool.unknown", message=f"Unknown tool: {tool_id}", data={"tool_id": tool_id})
        try:
            jsonschema.Draft202012Validator(tool_def.get("args_schema", {})).validate(args)
        except jsonschema.ValidationError as e:
            raise ValidationError(
                code="tool.args_invalid",
                message=f"Tool args validation failed: {e.message}",
                data={"tool_id": tool_id},
            ) from e

    def call(self, tool_id: str, args: dict[str, Any], *, dry_run: bool) -> dict[str, Any]:
        impl = self._impls.get(tool_id)
        if impl is None:
            raise KeyError(tool_id)
        self.validate_args(tool_id, args)
        return impl(args, dry_run)

    def expected_effects(self, tool_id: str, args: dict[str, Any]) -> List[dict[str, Any]]:
        out = self.call(tool_id, args, dry_run=True)
        effects = out.get("expected_effects")
        return effects if isinstance(effects, list) else []

    def list_tools(self) -> list[dict[str, Any]]:
        return [self._defs[k] for k in sorted(self._defs.keys())]
