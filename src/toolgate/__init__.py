"""Toolgate: approval-gated, guardrailed access to MCP tool servers.

Sits between an agent and its MCP tool servers: manages the connections,
holds untrusted calls for human approval, and runs every call through a
pluggable guardrail pipeline.
"""

from .version import __version__
from .gateway.approval import ApprovalRequest, ApprovalStatus, ApprovalStore
from .gateway.config import GatewayConfig, GatewayConfigError, load_gateway_config
from .gateway.trust import TrustPolicy
from .guardrails.pipeline import GuardrailPipeline

__all__ = [
    "__version__",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalStore",
    "GatewayConfig",
    "GatewayConfigError",
    "GuardrailPipeline",
    "TrustPolicy",
    "load_gateway_config",
    "ConnectionManager",
    "FunctionDispatcher",
    "ToolGateway",
]

# These pull in the MCP SDK, so they load on first access.
_LAZY = {
    "ConnectionManager": "toolgate.gateway.connections",
    "FunctionDispatcher": "toolgate.gateway.dispatcher",
    "ToolGateway": "toolgate.gateway.server",
}


def __getattr__(name: str):
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module 'toolgate' has no attribute {name!r}")
    import importlib

    return getattr(importlib.import_module(module_name), name)
