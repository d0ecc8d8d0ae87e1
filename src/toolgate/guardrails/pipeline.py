"""Guardrail pipeline: runs the configured plugins over a tool call.

Two phases per call: ``pre_tool_input`` before the downstream server is
invoked and ``post_tool_output`` on its result.  Plugins run in
ascending priority.  The first ``block`` halts the phase; ``modify``
carries the mutated context into the next plugin.

A plugin that raises is either converted into a block (``fail_open``
false, the default) or skipped (``fail_open`` true).
"""

from __future__ import annotations

import logging
from typing import Any

from toolgate.gateway.config import GuardrailsConfig
from toolgate.guardrails.context import (
    GuardrailAction,
    GuardrailContext,
    GuardrailPhase,
    GuardrailResult,
    create_context,
)
from toolgate.guardrails.errors import GuardrailExecutionError, GuardrailInitError
from toolgate.guardrails.plugins import GuardrailPlugin, create_plugin

logger = logging.getLogger("toolgate.guardrails.pipeline")


class GuardrailPipeline:
    """Ordered set of guardrail plugins built from a :class:`GuardrailsConfig`."""

    def __init__(self, config: GuardrailsConfig | None = None) -> None:
        self._config = config or GuardrailsConfig()
        self._plugins: list[GuardrailPlugin] = []
        self._enabled = False

    @property
    def enabled(self) -> bool:
        """True once initialized with guardrails on and at least one plugin."""
        return self._enabled

    @property
    def plugins(self) -> list[GuardrailPlugin]:
        return list(self._plugins)

    @property
    def fail_open(self) -> bool:
        return self._config.fail_open

    async def initialize(self) -> None:
        if not self._config.enabled:
            logger.info("Guardrails disabled in configuration")
            return

        for name, plugin_config in self._config.plugins.items():
            if not plugin_config.get("enabled", True):
                logger.debug("Guardrail plugin '%s' disabled", name)
                continue
            try:
                plugin = await self._load(name, plugin_config)
            except GuardrailInitError as e:
                logger.error("%s", e)
                continue
            self._plugins.append(plugin)
            logger.info(
                "Guardrail plugin '%s' initialized (priority %d)",
                name, plugin.priority,
            )

        # list.sort is stable, so equal priorities keep config order
        self._plugins.sort(key=lambda p: p.priority)
        self._enabled = bool(self._plugins)
        logger.info(
            "Guardrails initialized with %d plugins", len(self._plugins),
        )

    async def _load(self, name: str, config: dict[str, Any]) -> GuardrailPlugin:
        plugin = create_plugin(name)
        try:
            await plugin.initialize(config)
        except Exception as e:
            raise GuardrailInitError(name, str(e)) from e
        return plugin

    def add_plugin(self, plugin: GuardrailPlugin) -> None:
        """Insert an already-initialized plugin and enable the pipeline."""
        self._plugins.append(plugin)
        self._plugins.sort(key=lambda p: p.priority)
        self._enabled = True

    def create_context(self, **kwargs: Any) -> GuardrailContext:
        return create_context(**kwargs)

    async def execute(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        """Run every enabled plugin registered for *phase*."""
        if not self._enabled:
            return GuardrailResult(GuardrailAction.ALLOW, context)

        seen_violations = len(context.violations)
        seen_modifications = len(context.modifications)

        for plugin in self._plugins:
            if not plugin.enabled or not plugin.handles(phase):
                continue

            try:
                result = await plugin.execute(phase, context)
            except Exception as e:
                error = GuardrailExecutionError(plugin.name, phase.value, str(e))
                logger.error("%s", error, exc_info=True)
                if not self._config.fail_open:
                    return GuardrailResult(
                        GuardrailAction.BLOCK,
                        context,
                        blocked_by=plugin.name,
                        block_reason=f"Plugin error: {e}",
                    )
                continue

            seen_violations = self._log_violations(context, seen_violations)
            seen_modifications = self._log_modifications(
                context, seen_modifications,
            )

            if result.action is GuardrailAction.BLOCK:
                logger.warning(
                    "Request %s blocked by guardrail '%s': %s",
                    context.request_id,
                    result.blocked_by or plugin.name,
                    result.block_reason,
                )
                if result.blocked_by is None:
                    result.blocked_by = plugin.name
                return result

            context = result.context

        return GuardrailResult(GuardrailAction.ALLOW, context)

    def _log_violations(self, context: GuardrailContext, start: int) -> int:
        if self._config.log_violations:
            for violation in context.violations[start:]:
                logger.warning(
                    "Guardrail violation: %s - %s (rule=%s, severity=%s)",
                    violation.plugin_name,
                    violation.message,
                    violation.rule,
                    violation.severity,
                )
        return len(context.violations)

    def _log_modifications(self, context: GuardrailContext, start: int) -> int:
        if self._config.log_modifications:
            for mod in context.modifications[start:]:
                logger.info(
                    "Guardrail modification: %s - %s (field=%s)",
                    mod.plugin_name, mod.reason, mod.field,
                )
        return len(context.modifications)

    async def shutdown(self) -> None:
        for plugin in self._plugins:
            try:
                await plugin.shutdown()
            except Exception as e:
                logger.error(
                    "Error shutting down guardrail plugin '%s': %s",
                    plugin.name, e,
                )
        self._plugins = []
        self._enabled = False
