from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from kaliclean.audit.logger import AuditLogger
from kaliclean.registry.operation_registry import Operation, RiskTier

from .mode import Mode
from .prompter import ConsolePrompter, Prompter


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    reason: str = ""


@dataclass(frozen=True)
class RequireTypedKeyword:
    keyword: str
    consequence: str = ""


ConfirmationDecision = Union[Allow, Deny, RequireTypedKeyword]

YES_ANSWERS = ("y", "yes")


class ConfirmationGate:
    """
    Decides whether an operation may proceed.

    Invariants:
    - dry-run denies everything, after logging what would have been asked.
    - auto_yes never applies to dangerous operations.
    - a dangerous operation needs dangerous_enabled *and* the exact keyword.
    """

    def __init__(self, audit: AuditLogger, prompter: Optional[Prompter] = None):
        self._audit = audit
        self._prompter = prompter if prompter is not None else ConsolePrompter()

    def decide(self, operation: Operation, mode: Mode) -> ConfirmationDecision:
        tier = operation.risk_tier
        if not isinstance(tier, RiskTier):
            raise ValueError(f"unknown risk tier for {operation.op_id}: {tier!r}")

        if mode.dry_run:
            if tier is RiskTier.DANGEROUS:
                self._audit.record(
                    f"DRY-RUN: would typed-confirm: {operation.description} (keyword={operation.keyword})"
                )
            elif tier is RiskTier.CONFIRM:
                self._audit.record(f"DRY-RUN: would prompt: {operation.description}")
            else:
                self._audit.record(f"DRY-RUN: would run: {operation.description}")
            return Deny(reason="dry_run")

        if tier is RiskTier.SAFE:
            return Allow()

        if tier is RiskTier.CONFIRM:
            if mode.auto_yes:
                return Allow()
            if mode.quiet:
                return Deny(reason="quiet")
            answer = self._prompter.ask(f"{operation.description} [y/N]: ")
            if answer is not None and answer.strip().lower() in YES_ANSWERS:
                return Allow()
            return Deny(reason="declined")

        if not mode.dangerous_enabled:
            self._audit.record(f"{operation.op_id}: {operation.description} is disabled unless --dangerous is passed")
            return Deny(reason="dangerous_disabled")
        return RequireTypedKeyword(
            keyword=str(operation.keyword),
            consequence=operation.consequence or f"You are about to run: {operation.description} (irreversible).",
        )

    def confirm_keyword(self, decision: RequireTypedKeyword) -> ConfirmationDecision:
        """
        One attempt, byte-exact comparison. No stripping, no case folding.
        """
        self._prompter.say("")
        self._prompter.say(decision.consequence)
        self._prompter.say(f"To confirm, type the keyword exactly: {decision.keyword}")
        typed = self._prompter.ask("> ")
        if typed is not None and typed == decision.keyword:
            return Allow()
        return Deny(reason="keyword_mismatch")

    def resolve(self, operation: Operation, mode: Mode) -> ConfirmationDecision:
        """decide() followed by the typed keyword step when one is required."""
        decision = self.decide(operation, mode)
        if isinstance(decision, RequireTypedKeyword):
            return self.confirm_keyword(decision)
        return decision

    def confirm(self, text: str, mode: Mode) -> bool:
        """Ad-hoc confirm-tier question outside the operation list."""
        probe = Operation(op_id="confirm", description=text, risk_tier=RiskTier.CONFIRM)
        return isinstance(self.decide(probe, mode), Allow)
