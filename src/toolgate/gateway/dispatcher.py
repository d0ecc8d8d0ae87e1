"""Function-call dispatcher: the single entry point for agent tool calls.

An agent calls ``mcp__{server}__{tool}`` with an argument object.  The
dispatcher resolves the target, validates arguments against the tool's
input schema, decides whether human approval is needed, runs the
guardrail pipeline around the call, and forwards it to the connection
manager.  Every outcome, including failures, comes back as a
:class:`FunctionCallResult`.

Routing metadata travels in reserved argument keys (``_mcp_server``,
``_mcp_tool``, ``_approval_id``).  They are split off into a
:class:`CallEnvelope` before anything else looks at the arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from toolgate.gateway.approval import ApprovalStatus, ApprovalStore
from toolgate.gateway.config import APPROVAL_MODES
from toolgate.gateway.connections import ConnectionManager, ToolDescriptor
from toolgate.gateway.mcp_client import DownstreamError
from toolgate.gateway.trust import TrustPolicy, tool_key
from toolgate.gateway.validation import ArgumentValidator, JsonSchemaValidator
from toolgate.guardrails.context import GuardrailPhase
from toolgate.guardrails.errors import GuardrailBlockError
from toolgate.guardrails.pipeline import GuardrailPipeline
from toolgate.utils.sanitize import redact_sensitive

logger = logging.getLogger("toolgate.gateway.dispatcher")

FUNCTION_PREFIX = "mcp__"
NAMESPACE_SEPARATOR = "__"

SERVER_KEY = "_mcp_server"
TOOL_KEY = "_mcp_tool"
APPROVAL_ID_KEY = "_approval_id"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GatewayError(Exception):
    """Base error for a rejected function call."""


class InvalidFunctionNameError(GatewayError):
    """The function name is not a routable ``mcp__server__tool`` name."""


class UnknownServerError(GatewayError):
    """The call targets a server that is not configured."""


class UnknownToolError(GatewayError):
    """The target server does not expose the requested tool."""


class ArgumentValidationError(GatewayError):
    """Arguments failed the tool's input schema."""

    def __init__(self, server_name: str, tool_name: str, errors: list[str]) -> None:
        super().__init__(
            f"Invalid arguments for {tool_key(server_name, tool_name)}: "
            f"{', '.join(errors)}"
        )
        self.errors = list(errors)


class ApprovalNotFoundError(GatewayError):
    """The approval id being redeemed does not exist."""


class ApprovalExpiredError(GatewayError):
    """The approval id being redeemed expired before it was resolved."""


class ApprovalNotGrantedError(GatewayError):
    """The approval id being redeemed is pending or was denied."""


# ---------------------------------------------------------------------------
# Call envelope and result
# ---------------------------------------------------------------------------

def function_name(server_name: str, tool_name: str) -> str:
    return f"{FUNCTION_PREFIX}{server_name}{NAMESPACE_SEPARATOR}{tool_name}"


@dataclass(frozen=True)
class CallEnvelope:
    """A function call with routing metadata separated from tool arguments."""
    server_name: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    approval_id: str | None = None

    @classmethod
    def from_function_call(
        cls, name: str, args: dict[str, Any] | None,
    ) -> CallEnvelope:
        """Parse ``mcp__{server}__{tool}`` plus reserved keys in *args*.

        Reserved keys override the names encoded in *name* and are
        removed from the returned arguments.

        Raises:
            InvalidFunctionNameError: *name* lacks the ``mcp__`` prefix, or
                the server or tool cannot be determined.
        """
        if not isinstance(name, str) or not name.startswith(FUNCTION_PREFIX):
            raise InvalidFunctionNameError(f"Invalid function name: {name}")

        args = dict(args or {})
        server_override = args.pop(SERVER_KEY, None)
        tool_override = args.pop(TOOL_KEY, None)
        approval_id = args.pop(APPROVAL_ID_KEY, None)

        # Server names never contain "__", so the first separator splits
        server, _, tool = name[len(FUNCTION_PREFIX):].partition(
            NAMESPACE_SEPARATOR,
        )

        server = str(server_override) if server_override else server
        tool = str(tool_override) if tool_override else tool
        if not server or not tool:
            raise InvalidFunctionNameError(
                f"Could not determine MCP server/tool from function: {name}"
            )

        return cls(
            server_name=server,
            tool_name=tool,
            arguments=args,
            approval_id=str(approval_id) if approval_id else None,
        )


@dataclass
class FunctionCallResult:
    success: bool
    data: Any = None
    error: str | None = None
    needs_approval: bool = False
    approval_id: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.needs_approval:
            out["needs_approval"] = True
            out["approval_id"] = self.approval_id
        if self.message is not None:
            out["message"] = self.message
        return out


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class FunctionDispatcher:
    """Routes agent function calls to downstream tools.

    Args:
        manager: Connections to the downstream servers.
        approvals: Approval requests and session trust.
        trust: Standing global and per-server trust.
        approval_mode: ``always``, ``trusted`` or ``never``.
        guardrails: Optional pipeline run before and after each call.
        validator: Argument validator; defaults to JSON Schema.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        approvals: ApprovalStore,
        trust: TrustPolicy | None = None,
        approval_mode: str = "always",
        guardrails: GuardrailPipeline | None = None,
        validator: ArgumentValidator | None = None,
    ) -> None:
        if approval_mode not in APPROVAL_MODES:
            raise ValueError(f"Invalid approval_mode: {approval_mode}")
        self._manager = manager
        self._approvals = approvals
        self._trust = trust or TrustPolicy()
        self._approval_mode = approval_mode
        self._guardrails = guardrails
        self._validator = validator or JsonSchemaValidator()
        self._function_count = 0

    @property
    def approval_mode(self) -> str:
        return self._approval_mode

    @property
    def trust(self) -> TrustPolicy:
        return self._trust

    # -- function definitions ------------------------------------------------

    async def get_function_definitions(self) -> list[dict[str, Any]]:
        """Function definitions for every tool on every connected server.

        Listing refreshes the schema cache used for argument validation.
        """
        try:
            tools = await self._manager.list_all_tools()
        except Exception as e:
            logger.error("Failed to generate function definitions: %s", e)
            return []
        definitions = [_to_function_definition(t) for t in tools]
        self._function_count = len(definitions)
        logger.debug(
            "Generated %d function definitions from MCP tools", len(definitions),
        )
        return definitions

    async def is_tool_available(self, server_name: str, tool_name: str) -> bool:
        try:
            tools = await self._manager.list_tools(server_name)
        except DownstreamError:
            return False
        return any(t.name == tool_name for t in tools)

    async def get_available_tools_by_server(self) -> dict[str, list[ToolDescriptor]]:
        by_server: dict[str, list[ToolDescriptor]] = {}
        for tool in await self._manager.list_all_tools():
            by_server.setdefault(tool.server_name, []).append(tool)
        return by_server

    def update_trusted_tools(
        self,
        trusted_tools: list[str],
        trusted_tools_by_server: dict[str, list[str]] | None = None,
    ) -> None:
        self._trust.update(trusted_tools, trusted_tools_by_server)

    def get_stats(self) -> dict[str, Any]:
        connected = self._manager.get_connected_servers()
        return {
            "total_functions": self._function_count,
            "server_count": len(connected),
            "trusted_tool_count": len(self._trust.global_tools),
            "connected_servers": connected,
            "approval_mode": self._approval_mode,
        }

    # -- calls ---------------------------------------------------------------

    async def handle_function_call(
        self,
        requester: str,
        name: str,
        args: dict[str, Any] | None = None,
    ) -> FunctionCallResult:
        """Run one agent function call end to end. Never raises."""
        logger.info("Function call from %s: %s", requester, name)
        try:
            return await self._handle(requester, name, args)
        except GatewayError as e:
            logger.warning("Function call %s rejected: %s", name, e)
            return FunctionCallResult(success=False, error=str(e))
        except GuardrailBlockError as e:
            return FunctionCallResult(success=False, error=str(e))
        except DownstreamError as e:
            logger.error("Function call failed for %s: %s", name, e)
            return FunctionCallResult(
                success=False, error=f"MCP tool execution failed: {e}",
            )
        except Exception as e:
            logger.exception("Unexpected error handling function call %s", name)
            return FunctionCallResult(
                success=False, error=f"MCP tool execution failed: {e}",
            )

    async def _handle(
        self, requester: str, name: str, args: dict[str, Any] | None,
    ) -> FunctionCallResult:
        envelope = CallEnvelope.from_function_call(name, args)
        server, tool = envelope.server_name, envelope.tool_name

        descriptor = await self._resolve_tool(server, tool)
        if descriptor is not None:
            errors = self._validator.validate(
                descriptor.input_schema, envelope.arguments,
            )
            if errors:
                raise ArgumentValidationError(server, tool, errors)

        if self._needs_approval(requester, envelope):
            request = self._approvals.create(
                requester, server, tool, envelope.arguments,
            )
            return FunctionCallResult(
                success=False,
                needs_approval=True,
                approval_id=request.approval_id,
                message=(
                    f"Approval needed for {requester} to call "
                    f"{tool_key(server, tool)}. Request ID: {request.approval_id}"
                ),
            )

        if envelope.approval_id and self._approval_mode != "never":
            # session trust already admits the call; a purged id is moot
            if not self._approvals.is_approved(requester, server, tool):
                self._redeem(envelope.approval_id)

        arguments = envelope.arguments
        context = None
        if self._guardrails is not None and self._guardrails.enabled:
            context = self._guardrails.create_context(
                requester=requester,
                server_name=server,
                tool_name=tool,
                tool_args=arguments,
            )
            pre = await self._guardrails.execute(
                GuardrailPhase.PRE_TOOL_INPUT, context,
            )
            if pre.blocked:
                raise GuardrailBlockError(
                    pre.blocked_by or "unknown", pre.block_reason or "blocked",
                )
            # allow carries whatever the plugins rewrote
            context = pre.context
            if context.tool_args is not None:
                arguments = context.tool_args

        logger.info(
            "Executing MCP tool %s for %s", tool_key(server, tool), requester,
        )
        logger.debug("Tool arguments: %s", redact_sensitive(arguments))
        result = _result_to_data(
            await self._manager.call_tool(server, tool, arguments)
        )

        if context is not None:
            context.tool_result = result
            post = await self._guardrails.execute(
                GuardrailPhase.POST_TOOL_OUTPUT, context,
            )
            if post.blocked:
                raise GuardrailBlockError(
                    post.blocked_by or "unknown", post.block_reason or "blocked",
                )
            result = post.context.tool_result

        return FunctionCallResult(success=True, data=result)

    async def _resolve_tool(
        self, server_name: str, tool_name: str,
    ) -> ToolDescriptor | None:
        """Descriptor for the target tool, or ``None`` if the server's
        tool list is not known yet.

        Raises:
            UnknownServerError: *server_name* is not configured.
            UnknownToolError: The tool list is known and lacks *tool_name*.
        """
        if not self._manager.has_server(server_name):
            raise UnknownServerError(f"Unknown MCP server: {server_name}")

        tools = self._manager.cached_tools(server_name)
        if tools is None and self._manager.get_client(server_name) is not None:
            try:
                tools = await self._manager.list_tools(server_name)
            except DownstreamError as e:
                logger.warning(
                    "Could not refresh tool schemas for %s: %s",
                    server_name, e,
                )
        if tools is None:
            return None

        for descriptor in tools:
            if descriptor.name == tool_name:
                return descriptor
        raise UnknownToolError(
            f"Unknown tool '{tool_name}' on MCP server {server_name}"
        )

    def _needs_approval(self, requester: str, envelope: CallEnvelope) -> bool:
        server, tool = envelope.server_name, envelope.tool_name
        if self._approval_mode == "never":
            return False
        if envelope.approval_id:
            return False
        if self._approvals.is_approved(requester, server, tool):
            logger.debug("Session approval found for %s", tool_key(server, tool))
            return False
        if self._approval_mode == "trusted":
            return not self._trust.is_trusted(server, tool)
        return True

    def _redeem(self, approval_id: str) -> None:
        request = self._approvals.get(approval_id)
        if request is None:
            raise ApprovalNotFoundError(
                f"Approval request {approval_id} not found"
            )
        if request.status is ApprovalStatus.EXPIRED:
            raise ApprovalExpiredError(
                f"Approval request {approval_id} has expired"
            )
        if request.status is not ApprovalStatus.APPROVED:
            raise ApprovalNotGrantedError(
                f"Request not approved (status: {request.status.value})"
            )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_function_definition(tool: ToolDescriptor) -> dict[str, Any]:
    schema = tool.input_schema or {}
    properties = dict(schema.get("properties") or {})
    properties[SERVER_KEY] = {
        "type": "string",
        "description": "Internal: MCP server name",
        "default": tool.server_name,
    }
    properties[TOOL_KEY] = {
        "type": "string",
        "description": "Internal: MCP tool name",
        "default": tool.name,
    }
    properties[APPROVAL_ID_KEY] = {
        "type": "string",
        "description": "Internal: Approval ID if pre-approved",
    }
    return {
        "name": function_name(tool.server_name, tool.name),
        "description": f"[{tool.server_name}] {tool.description}",
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": list(schema.get("required") or []),
        },
    }


def _result_to_data(result: Any) -> Any:
    """Plain JSON-safe form of a downstream ``CallToolResult``."""
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return result
