"""Guardrail pipeline and built-in plugins."""

from toolgate.guardrails.context import (
    GuardrailAction,
    GuardrailContext,
    GuardrailModification,
    GuardrailPhase,
    GuardrailResult,
    GuardrailViolation,
    create_context,
)
from toolgate.guardrails.errors import (
    GuardrailBlockError,
    GuardrailError,
    GuardrailExecutionError,
    GuardrailInitError,
)
from toolgate.guardrails.pipeline import GuardrailPipeline
from toolgate.guardrails.plugins import (
    PLUGIN_REGISTRY,
    GuardrailPlugin,
    register_plugin,
)

__all__ = [
    "GuardrailAction",
    "GuardrailBlockError",
    "GuardrailContext",
    "GuardrailError",
    "GuardrailExecutionError",
    "GuardrailInitError",
    "GuardrailModification",
    "GuardrailPhase",
    "GuardrailPipeline",
    "GuardrailPlugin",
    "GuardrailResult",
    "GuardrailViolation",
    "PLUGIN_REGISTRY",
    "create_context",
    "register_plugin",
]
