"""Guardrail context and result types.

A :class:`GuardrailContext` is created once per tool call and threaded
through both phases.  Plugins mutate it in place: they rewrite
``tool_args`` / ``tool_result`` and append to ``violations`` and
``modifications``.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class GuardrailPhase(str, enum.Enum):
    """Points in a tool call where plugins run."""
    PRE_TOOL_INPUT = "pre_tool_input"
    POST_TOOL_OUTPUT = "post_tool_output"


class GuardrailAction(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"
    MODIFY = "modify"


@dataclass
class GuardrailViolation:
    plugin_name: str
    phase: GuardrailPhase
    rule: str
    severity: str  # info | warning | error | critical
    message: str
    details: dict[str, Any] | None = None


@dataclass
class GuardrailModification:
    plugin_name: str
    phase: GuardrailPhase
    field: str
    reason: str
    original_value: Any = None
    new_value: Any = None


@dataclass
class GuardrailContext:
    """Mutable per-call state shared by every plugin."""
    request_id: str
    requester: str = "unknown"
    server_name: str | None = None
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: Any = None
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    metadata: dict[str, Any] = field(default_factory=dict)
    violations: list[GuardrailViolation] = field(default_factory=list)
    modifications: list[GuardrailModification] = field(default_factory=list)


@dataclass
class GuardrailResult:
    action: GuardrailAction
    context: GuardrailContext
    blocked_by: str | None = None
    block_reason: str | None = None

    @property
    def blocked(self) -> bool:
        return self.action is GuardrailAction.BLOCK


def create_context(
    *,
    request_id: str | None = None,
    requester: str = "unknown",
    server_name: str | None = None,
    tool_name: str | None = None,
    tool_args: dict[str, Any] | None = None,
    tool_result: Any = None,
) -> GuardrailContext:
    """Create a context with a fresh request id unless one is given."""
    return GuardrailContext(
        request_id=request_id or str(uuid.uuid4()),
        requester=requester,
        server_name=server_name,
        tool_name=tool_name,
        tool_args=dict(tool_args) if tool_args is not None else None,
        tool_result=tool_result,
    )
