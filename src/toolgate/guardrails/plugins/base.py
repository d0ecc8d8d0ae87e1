"""Base class for guardrail plugins."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..context import (
    GuardrailAction,
    GuardrailContext,
    GuardrailModification,
    GuardrailPhase,
    GuardrailResult,
    GuardrailViolation,
)


class GuardrailPlugin(ABC):
    """A policy that inspects, blocks, or rewrites tool traffic.

    Subclasses set ``name``, ``phases`` and ``default_priority`` and
    implement :meth:`execute`.  Lower ``priority`` runs first.
    """

    name: str = "plugin"
    phases: frozenset[GuardrailPhase] = frozenset()
    default_priority: int = 100

    def __init__(self) -> None:
        self.enabled = False
        self.priority = self.default_priority
        self.config: dict[str, Any] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        self.config = dict(config)
        self.enabled = True
        priority = config.get("priority")
        if isinstance(priority, int):
            self.priority = priority

    @abstractmethod
    async def execute(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        ...

    async def shutdown(self) -> None:
        self.enabled = False

    def handles(self, phase: GuardrailPhase) -> bool:
        return phase in self.phases

    # -- result helpers ------------------------------------------------------

    def allow(self, context: GuardrailContext) -> GuardrailResult:
        return GuardrailResult(GuardrailAction.ALLOW, context)

    def block(self, context: GuardrailContext, reason: str) -> GuardrailResult:
        return GuardrailResult(
            GuardrailAction.BLOCK,
            context,
            blocked_by=self.name,
            block_reason=reason,
        )

    def modify(self, context: GuardrailContext) -> GuardrailResult:
        return GuardrailResult(GuardrailAction.MODIFY, context)

    def add_violation(
        self,
        context: GuardrailContext,
        phase: GuardrailPhase,
        rule: str,
        severity: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        context.violations.append(GuardrailViolation(
            plugin_name=self.name,
            phase=phase,
            rule=rule,
            severity=severity,
            message=message,
            details=details,
        ))

    def add_modification(
        self,
        context: GuardrailContext,
        phase: GuardrailPhase,
        field: str,
        reason: str,
        original_value: Any = None,
        new_value: Any = None,
    ) -> None:
        context.modifications.append(GuardrailModification(
            plugin_name=self.name,
            phase=phase,
            field=field,
            reason=reason,
            original_value=original_value,
            new_value=new_value,
        ))
