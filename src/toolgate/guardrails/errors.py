"""Guardrail exceptions."""

from __future__ import annotations


class GuardrailError(Exception):
    """Base class for guardrail failures."""


class GuardrailBlockError(GuardrailError):
    """A plugin blocked the call, or a plugin fault was converted to a block."""

    def __init__(self, plugin_name: str, reason: str) -> None:
        super().__init__(
            f"Request blocked by guardrail '{plugin_name}': {reason}"
        )
        self.plugin_name = plugin_name
        self.reason = reason


class GuardrailInitError(GuardrailError):
    """A plugin could not be created or initialized."""

    def __init__(self, plugin_name: str, message: str) -> None:
        super().__init__(
            f"Failed to initialize guardrail plugin '{plugin_name}': {message}"
        )
        self.plugin_name = plugin_name


class GuardrailExecutionError(GuardrailError):
    """A plugin raised while executing a phase."""

    def __init__(self, plugin_name: str, phase: str, message: str) -> None:
        super().__init__(
            f"Guardrail plugin '{plugin_name}' failed during '{phase}': "
            f"{message}"
        )
        self.plugin_name = plugin_name
        self.phase = phase
