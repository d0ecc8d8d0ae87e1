"""Built-in guardrail plugins and the name → class registry.

Plugins are looked up by the names used in the ``guardrails.plugins``
config section.  Extra plugins can be added with :func:`register_plugin`
before the pipeline initializes.
"""

from __future__ import annotations

from typing import Callable

from ..errors import GuardrailInitError
from .base import GuardrailPlugin
from .pattern_blocker import PatternBlockerPlugin
from .pii_redactor import PIIRedactorPlugin
from .rate_limiter import RateLimiterPlugin

PluginFactory = Callable[[], GuardrailPlugin]

PLUGIN_REGISTRY: dict[str, PluginFactory] = {
    "rate_limiter": RateLimiterPlugin,
    "pii_redactor": PIIRedactorPlugin,
    "pattern_blocker": PatternBlockerPlugin,
}


def register_plugin(name: str, factory: PluginFactory) -> None:
    """Make *factory* available under *name* in the guardrails config."""
    PLUGIN_REGISTRY[name] = factory


def create_plugin(name: str) -> GuardrailPlugin:
    factory = PLUGIN_REGISTRY.get(name)
    if factory is None:
        raise GuardrailInitError(name, f"Unknown plugin: {name}")
    return factory()


__all__ = [
    "GuardrailPlugin",
    "PatternBlockerPlugin",
    "PIIRedactorPlugin",
    "PLUGIN_REGISTRY",
    "RateLimiterPlugin",
    "create_plugin",
    "register_plugin",
]
