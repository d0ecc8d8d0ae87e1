"""Gateway MCP server: exposes downstream tools to an agent over stdio.

Every connected downstream tool is listed as ``mcp__{server}__{tool}``
and routed through :class:`~toolgate.gateway.dispatcher.FunctionDispatcher`.
A handful of administration tools sit alongside them so an operator
can work the approval queue and inspect connections:

- ``approve_mcp_request`` / ``deny_mcp_request``
- ``get_pending_approvals``
- ``mcp_status``
- ``retry_mcp_server``

The agent on the stdio channel can call these too, so approving needs
an HMAC approval token that is printed to stderr, out of the agent's
sight, when the request is created.

Uses the low-level ``mcp.server.lowlevel.Server`` so ``call_tool`` can
return ``CallToolResult`` directly and control ``isError``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import sys
import time
from typing import Any, Callable

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from toolgate.gateway.approval import ApprovalRequest, ApprovalStatus, ApprovalStore
from toolgate.gateway.config import GatewayConfig
from toolgate.gateway.connections import ConnectionFactory, ConnectionManager
from toolgate.gateway.dispatcher import FunctionCallResult, FunctionDispatcher
from toolgate.gateway.trust import TrustPolicy
from toolgate.guardrails.pipeline import GuardrailPipeline

logger = logging.getLogger("toolgate.gateway.server")

TOOL_APPROVE = "approve_mcp_request"
TOOL_DENY = "deny_mcp_request"
TOOL_PENDING = "get_pending_approvals"
TOOL_STATUS = "mcp_status"
TOOL_RETRY = "retry_mcp_server"
ADMIN_TOOL_NAMES = frozenset({
    TOOL_APPROVE, TOOL_DENY, TOOL_PENDING, TOOL_STATUS, TOOL_RETRY,
})


class ToolGateway:
    """Wires config into the connection manager, approval store, trust
    policy, guardrail pipeline and dispatcher, and serves them over MCP.

    Args:
        config: Validated gateway configuration.
        connection_factory: Passed to :class:`ConnectionManager`.
        clock: Passed to :class:`ApprovalStore`.
        require_approval_token: Require the out-of-band token to approve.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], float] = time.time,
        require_approval_token: bool = True,
    ) -> None:
        self._config = config
        self._require_approval_token = require_approval_token
        self._gateway_secret = os.urandom(32)
        self.manager = ConnectionManager(
            config.servers,
            connect_timeout=config.connect_timeout,
            connection_factory=connection_factory,
        )
        self.approvals = ApprovalStore(
            timeout=config.approval_timeout,
            retention=config.approval_retention,
            clock=clock,
        )
        self.trust = TrustPolicy(
            config.trusted_tools, config.trusted_tools_by_server,
        )
        self.guardrails = GuardrailPipeline(config.guardrails)
        self.dispatcher = FunctionDispatcher(
            self.manager,
            self.approvals,
            self.trust,
            approval_mode=config.approval_mode,
            guardrails=self.guardrails,
        )
        self._server = Server("toolgate")
        self._setup_handlers()

    @property
    def requester(self) -> str:
        return self._config.requester

    @property
    def require_approval_token(self) -> bool:
        return self._require_approval_token

    # -- approval tokens -----------------------------------------------------

    def _compute_approval_token(self, request: ApprovalRequest) -> str:
        """HMAC-SHA256 over the request id, target, arguments and creation
        time, so a token approves exactly one request."""
        args_hash = hashlib.sha256(
            json.dumps(request.arguments, sort_keys=True, default=str).encode(),
        ).hexdigest()
        message = (
            f"{request.approval_id}|{request.server_name}|{request.tool_name}|"
            f"{args_hash}|{request.created_at}"
        )
        return hmac.new(
            self._gateway_secret, message.encode(), hashlib.sha256,
        ).hexdigest()

    def _emit_approval_token(self, request: ApprovalRequest) -> None:
        token = self._compute_approval_token(request)
        print(
            f"[TOOLGATE] Approval token for request {request.approval_id} "
            f"({request.server_name}:{request.tool_name}): {token}",
            file=sys.stderr,
            flush=True,
        )

    # -- handler registration ------------------------------------------------

    def _setup_handlers(self) -> None:
        gateway = self

        @self._server.list_tools()
        async def handle_list_tools() -> list[types.Tool]:
            return await gateway.list_tools()

        @self._server.call_tool()
        async def handle_call_tool(
            name: str, arguments: dict[str, Any] | None,
        ) -> types.CallToolResult:
            return await gateway.call_tool(name, arguments)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Connect downstreams, load guardrails, start the approval sweeper.

        Downstream failures are logged; the gateway starts regardless.
        """
        connected, total = await self.manager.initialize()
        await self.guardrails.initialize()
        await self.approvals.start_sweeper(self._config.sweep_interval)
        logger.info(
            "Gateway started: %d/%d servers connected, approval mode '%s'",
            connected, total, self._config.approval_mode,
        )

    async def shutdown(self) -> None:
        await self.approvals.shutdown()
        await self.guardrails.shutdown()
        await self.manager.disconnect_all()
        logger.info("Gateway shut down")

    async def run_stdio(self) -> None:
        """Start the gateway, serve on stdio, and shut down on exit."""
        await self.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        finally:
            await self.shutdown()

    # -- MCP surface ---------------------------------------------------------

    async def list_tools(self) -> list[types.Tool]:
        tools = [
            types.Tool(
                name=d["name"],
                description=d["description"],
                inputSchema=d["parameters"],
            )
            for d in await self.dispatcher.get_function_definitions()
        ]
        tools.extend(_build_admin_tools(self._require_approval_token))
        return tools

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None,
    ) -> types.CallToolResult:
        arguments = arguments or {}
        if name in ADMIN_TOOL_NAMES:
            return await self._handle_admin(name, arguments)

        result = await self.dispatcher.handle_function_call(
            self.requester, name, arguments,
        )
        if result.needs_approval and self._require_approval_token:
            request = self.approvals.get(result.approval_id or "")
            if request is not None:
                self._emit_approval_token(request)
                result.message = (
                    f"{result.message}. An operator must approve it with the "
                    "approval token shown in the gateway terminal."
                )
        return _to_call_result(result)

    # -- administration tools ------------------------------------------------

    async def _handle_admin(
        self, name: str, arguments: dict[str, Any],
    ) -> types.CallToolResult:
        if name == TOOL_APPROVE:
            return self._handle_approve(arguments)
        if name == TOOL_DENY:
            return self._handle_deny(arguments)
        if name == TOOL_PENDING:
            requester = arguments.get("requester")
            requests = (
                self.approvals.list_by_requester(str(requester))
                if requester else self.approvals.list_pending()
            )
            return _text_result({
                "count": len(requests),
                "requests": [r.to_dict() for r in requests],
            })
        if name == TOOL_STATUS:
            return _text_result(self.status())
        return await self._handle_retry(arguments)

    def _handle_approve(self, arguments: dict[str, Any]) -> types.CallToolResult:
        approval_id = arguments.get("approval_id")
        if not approval_id:
            return _error_result("Missing required argument: approval_id")
        approval_id = str(approval_id)
        approved_by = str(arguments.get("approved_by") or "user")

        request = self.approvals.get(approval_id)
        if request is None or request.status is not ApprovalStatus.PENDING:
            return _error_result(self._not_resolvable(approval_id, "approve"))

        if self._require_approval_token:
            token = arguments.get("approval_token")
            if not token:
                return _error_result("Missing required argument: approval_token")
            expected = self._compute_approval_token(request)
            if not hmac.compare_digest(str(token), expected):
                logger.warning(
                    "Invalid approval token for request %s", approval_id,
                )
                return _error_result(
                    f"Invalid approval token for request {approval_id}"
                )

        if not self.approvals.approve(approval_id, approved_by):
            return _error_result(self._not_resolvable(approval_id, "approve"))

        request = self.approvals.get(approval_id)
        return _text_result({
            "approved": True,
            "approval_id": approval_id,
            "server": request.server_name if request else None,
            "tool": request.tool_name if request else None,
            "message": (
                "Approved. Retry the call with _approval_id set to "
                f"{approval_id}."
            ),
        })

    def _handle_deny(self, arguments: dict[str, Any]) -> types.CallToolResult:
        approval_id = arguments.get("approval_id")
        if not approval_id:
            return _error_result("Missing required argument: approval_id")
        approval_id = str(approval_id)
        reason = arguments.get("reason")

        if not self.approvals.deny(approval_id, str(reason) if reason else None):
            return _error_result(self._not_resolvable(approval_id, "deny"))
        return _text_result({"denied": True, "approval_id": approval_id})

    async def _handle_retry(self, arguments: dict[str, Any]) -> types.CallToolResult:
        server = arguments.get("server")
        if not server:
            return _error_result("Missing required argument: server")
        server = str(server)
        if not self.manager.has_server(server):
            return _error_result(f"Unknown MCP server: {server}")
        ok = await self.manager.retry_connection(server)
        body = {
            "server": server,
            "connected": ok,
            "status": self.manager.get_connection_status(server),
        }
        if ok:
            return _text_result(body)
        return _error_result(json.dumps(body))

    def _not_resolvable(self, approval_id: str, verb: str) -> str:
        status = self.approvals.get_status(approval_id)
        if status is None:
            return f"Approval request {approval_id} not found"
        return f"Cannot {verb} request {approval_id} (status: {status.value})"

    def status(self) -> dict[str, Any]:
        return {
            "servers": self.manager.get_status(),
            "approvals": self.approvals.get_stats(),
            "session_approvals": self.approvals.session_approvals(),
            "dispatcher": self.dispatcher.get_stats(),
            "guardrails": {
                "enabled": self.guardrails.enabled,
                "plugins": [p.name for p in self.guardrails.plugins],
            },
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text_result(payload: Any, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(
            type="text", text=json.dumps(payload, indent=2, default=str),
        )],
        isError=is_error,
    )


def _error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)],
        isError=True,
    )


def _to_call_result(result: FunctionCallResult) -> types.CallToolResult:
    # needs-approval is a normal outcome, not a tool failure
    is_error = not result.success and not result.needs_approval
    return _text_result(result.to_dict(), is_error=is_error)


def _build_admin_tools(require_approval_token: bool) -> list[types.Tool]:
    approval_id = {
        "type": "string",
        "description": "The approval ID returned with a needs-approval result.",
    }
    approve_required = ["approval_id"]
    if require_approval_token:
        approve_required.append("approval_token")
    return [
        types.Tool(
            name=TOOL_APPROVE,
            description=(
                "Approve a pending MCP tool call. The tool is then trusted "
                "for the rest of the session."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "approval_id": approval_id,
                    "approval_token": {
                        "type": "string",
                        "description": (
                            "Token printed in the gateway terminal when "
                            "the request was created."
                        ),
                    },
                    "approved_by": {
                        "type": "string",
                        "description": "Who approved the request.",
                    },
                },
                "required": approve_required,
            },
        ),
        types.Tool(
            name=TOOL_DENY,
            description="Deny a pending MCP tool call.",
            inputSchema={
                "type": "object",
                "properties": {
                    "approval_id": approval_id,
                    "reason": {
                        "type": "string",
                        "description": "Why the request was denied.",
                    },
                },
                "required": ["approval_id"],
            },
        ),
        types.Tool(
            name=TOOL_PENDING,
            description=(
                "List pending approval requests, or every request made by "
                "one requester."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "requester": {
                        "type": "string",
                        "description": "Only show requests from this requester.",
                    },
                },
            },
        ),
        types.Tool(
            name=TOOL_STATUS,
            description="Connection status of every MCP server and approval stats.",
            inputSchema={"type": "object", "properties": {}},
        ),
        types.Tool(
            name=TOOL_RETRY,
            description="Reconnect to an MCP server from a clean retry count.",
            inputSchema={
                "type": "object",
                "properties": {
                    "server": {
                        "type": "string",
                        "description": "Configured server name.",
                    },
                },
                "required": ["server"],
            },
        ),
    ]


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def run_gateway(argv: list[str] | None = None) -> None:
    """Parse ``--config`` and run the gateway on stdio.

    Logs go to stderr; stdout carries the MCP stream.
    """
    import argparse
    import asyncio

    from toolgate.gateway.config import GatewayConfigError, load_gateway_config

    parser = argparse.ArgumentParser(
        prog="toolgate-gateway",
        description="MCP tool-call gateway with approvals and guardrails",
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to gateway YAML config file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--no-approval-token",
        action="store_true",
        default=False,
        help=(
            "Approve requests without the out-of-band token. "
            "Development and testing only."
        ),
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_gateway_config(args.config)
    except GatewayConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if not config.servers:
        logger.warning("No MCP servers configured")

    require_approval_token = not args.no_approval_token
    if not require_approval_token:
        print(
            "[TOOLGATE] WARNING: approval token verification disabled "
            "(--no-approval-token). The agent can approve its own requests.",
            file=sys.stderr,
        )

    gateway = ToolGateway(config, require_approval_token=require_approval_token)
    asyncio.run(gateway.run_stdio())
