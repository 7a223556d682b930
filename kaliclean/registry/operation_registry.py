from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from kaliclean.backup.targets import CommandDump
from kaliclean.core.errors import ValidationError


class RiskTier(enum.Enum):
    SAFE = "safe"
    CONFIRM = "confirm"
    DANGEROUS = "dangerous"


@dataclass(frozen=True)
class ToolCall:
    """
    One step of an operation's action.

    fatal=False steps are allowed to fail: the failure is logged and the
    operation continues with its next step.
    """

    tool_id: str
    args: Dict[str, Any] = field(default_factory=dict)
    fatal: bool = True
    log_output: bool = True


BackupTarget = Union[str, CommandDump]


@dataclass(frozen=True)
class Operation:
    op_id: str
    description: str
    risk_tier: RiskTier
    steps: Tuple[ToolCall, ...] = ()
    requires_backup_of: Tuple[BackupTarget, ...] = ()
    keyword: Optional[str] = None
    consequence: Optional[str] = None
    only_if_exists: Tuple[str, ...] = ()
    encrypt_backup: bool = False
    tolerates_missing_backup: bool = False

    def __post_init__(self) -> None:
        if not self.op_id:
            raise ValidationError(code="operation.invalid", message="op_id must be non-empty")
        if self.risk_tier is RiskTier.DANGEROUS and not self.keyword:
            raise ValidationError(
                code="operation.invalid",
                message=f"Dangerous operation requires a confirmation keyword: {self.op_id}",
            )


class OperationRegistry:
    """
    Ordered catalog of operations.

    Insertion order is execution order; later operations may rely on
    earlier ones having completed.
    """

    def __init__(self) -> None:
        self._ops: Dict[str, Operation] = {}

    def register(self, operation: Operation) -> None:
        if operation.op_id in self._ops:
            raise ValidationError(
                code="operation.duplicate",
                message=f"Duplicate op_id: {operation.op_id}",
                data={"op_id": operation.op_id},
            )
        self._ops[operation.op_id] = operation

    def get(self, op_id: str) -> Operation | None:
        return self._ops.get(op_id)

    def all(self) -> List[Operation]:
        return list(self._ops.values())

    def list_operations(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for op in self._ops.values():
            out.append(
                {
                    "op_id": op.op_id,
                    "description": op.description,
                    "risk_tier": op.risk_tier.value,
                    "keyword": op.keyword,
                    "steps": [s.tool_id for s in op.steps],
                    "backs_up": [t if isinstance(t, str) else t.name for t in op.requires_backup_of],
                }
            )
        return out

    def __len__(self) -> int:
        return len(self._ops)
