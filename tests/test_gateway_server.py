"""Tests for the gateway MCP surface: tool listing, routed calls and the
administration tools.

Most tests drive :class:`ToolGateway` against a fake fleet; the last
class runs the whole stack against a real FastMCP child process.
"""

import asyncio
import json
import sys
import textwrap

import pytest

mcp = pytest.importorskip("mcp", reason="mcp not installed")

from toolgate.gateway.config import (
    GatewayConfig,
    GuardrailsConfig,
    RetryPolicy,
    ServerConfig,
)
from toolgate.gateway.server import (
    ADMIN_TOOL_NAMES,
    ToolGateway,
    _build_admin_tools,
    run_gateway,
)


def _payload(result):
    return json.loads(result.content[0].text)


def _config(*names, **overrides):
    servers = [
        ServerConfig(name=n, command="fake", retry=RetryPolicy(max_attempts=0))
        for n in names
    ]
    return GatewayConfig(servers=servers, **overrides)


@pytest.fixture()
def files_fleet(fleet, make_tool):
    fleet.configure("files", tools=[
        make_tool(
            "read_file",
            {"path": {"type": "string"}},
            required=["path"],
        ),
        make_tool("list_dir", {"path": {"type": "string"}}),
    ])
    return fleet


def _gateway(fleet, clock=None, require_approval_token=True, **overrides):
    kwargs = {
        "connection_factory": fleet.factory,
        "require_approval_token": require_approval_token,
    }
    if clock is not None:
        kwargs["clock"] = clock
    return ToolGateway(_config("files", **overrides), **kwargs)


def _approval_token(gw, approval_id):
    return gw._compute_approval_token(gw.approvals.get(approval_id))


# =============================================================================
# Tool listing
# =============================================================================

class TestListTools:
    def test_namespaced_and_admin_tools(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                return await gw.list_tools()
            finally:
                await gw.shutdown()

        names = [t.name for t in asyncio.run(_test())]
        assert "mcp__files__read_file" in names
        assert "mcp__files__list_dir" in names
        assert ADMIN_TOOL_NAMES <= set(names)

    def test_reserved_routing_keys_in_schema(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                return await gw.list_tools()
            finally:
                await gw.shutdown()

        read = next(
            t for t in asyncio.run(_test()) if t.name == "mcp__files__read_file"
        )
        props = read.inputSchema["properties"]
        assert props["_mcp_server"]["default"] == "files"
        assert props["_mcp_tool"]["default"] == "read_file"
        assert "_approval_id" in props
        assert read.inputSchema["required"] == ["path"]

    def test_failed_server_lists_nothing(self, fleet, make_tool):
        fleet.configure("files", fail=-1, tools=[make_tool("read_file")])
        gw = _gateway(fleet)

        async def _test():
            await gw.start()
            try:
                return await gw.list_tools()
            finally:
                await gw.shutdown()

        names = {t.name for t in asyncio.run(_test())}
        assert names == set(ADMIN_TOOL_NAMES)


# =============================================================================
# Approval flow through the MCP surface
# =============================================================================

class TestApprovalFlow:
    def test_needs_approval_is_not_an_error(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                return await gw.call_tool(
                    "mcp__files__read_file", {"path": "/etc/hosts"},
                )
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is False
        body = _payload(result)
        assert body["success"] is False
        assert body["needs_approval"] is True
        assert body["approval_id"] in body["message"]
        assert files_fleet.calls == []

    def test_approve_then_redeem(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                first = _payload(await gw.call_tool(
                    "mcp__files__read_file", {"path": "/tmp/a"},
                ))
                approval_id = first["approval_id"]
                approved = await gw.call_tool(
                    "approve_mcp_request",
                    {
                        "approval_id": approval_id,
                        "approval_token": _approval_token(gw, approval_id),
                        "approved_by": "alice",
                    },
                )
                redeemed = await gw.call_tool(
                    "mcp__files__read_file",
                    {"path": "/tmp/a", "_approval_id": approval_id},
                )
                trusted = await gw.call_tool(
                    "mcp__files__read_file", {"path": "/tmp/b"},
                )
                return approval_id, approved, redeemed, trusted
            finally:
                await gw.shutdown()

        approval_id, approved, redeemed, trusted = asyncio.run(_test())

        body = _payload(approved)
        assert approved.isError is False
        assert body["approved"] is True
        assert body["approval_id"] == approval_id
        assert (body["server"], body["tool"]) == ("files", "read_file")

        assert redeemed.isError is False
        assert _payload(redeemed)["success"] is True
        # session trust covers the follow-up call without an approval id
        assert _payload(trusted)["success"] is True
        assert [c[2] for c in files_fleet.calls] == [
            {"path": "/tmp/a"}, {"path": "/tmp/b"},
        ]

    def test_deny_blocks_redemption(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                first = _payload(await gw.call_tool(
                    "mcp__files__read_file", {"path": "/tmp/a"},
                ))
                approval_id = first["approval_id"]
                denied = await gw.call_tool(
                    "deny_mcp_request",
                    {"approval_id": approval_id, "reason": "no"},
                )
                retried = await gw.call_tool(
                    "mcp__files__read_file",
                    {"path": "/tmp/a", "_approval_id": approval_id},
                )
                return approval_id, denied, retried
            finally:
                await gw.shutdown()

        approval_id, denied, retried = asyncio.run(_test())
        assert _payload(denied) == {"denied": True, "approval_id": approval_id}
        assert retried.isError is True
        assert "status: denied" in _payload(retried)["error"]
        assert files_fleet.calls == []

    def test_expired_request_cannot_be_approved(self, files_fleet, clock):
        gw = _gateway(files_fleet, clock=clock, approval_timeout=60)

        async def _test():
            await gw.start()
            try:
                first = _payload(await gw.call_tool(
                    "mcp__files__read_file", {"path": "/tmp/a"},
                ))
                clock.advance(60)
                return first["approval_id"], await gw.call_tool(
                    "approve_mcp_request",
                    {"approval_id": first["approval_id"]},
                )
            finally:
                await gw.shutdown()

        approval_id, result = asyncio.run(_test())
        assert result.isError is True
        assert result.content[0].text == (
            f"Cannot approve request {approval_id} (status: expired)"
        )

    def test_never_mode_calls_directly(self, files_fleet):
        gw = _gateway(files_fleet, approval_mode="never")

        async def _test():
            await gw.start()
            try:
                return await gw.call_tool(
                    "mcp__files__list_dir", {"path": "/"},
                )
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is False
        assert _payload(result)["success"] is True

    def test_trusted_mode(self, files_fleet):
        gw = _gateway(
            files_fleet,
            approval_mode="trusted",
            trusted_tools_by_server={"files": ["list_dir"]},
        )

        async def _test():
            await gw.start()
            try:
                listed = await gw.call_tool("mcp__files__list_dir", {})
                read = await gw.call_tool(
                    "mcp__files__read_file", {"path": "/x"},
                )
                return listed, read
            finally:
                await gw.shutdown()

        listed, read = asyncio.run(_test())
        assert _payload(listed)["success"] is True
        assert _payload(read)["needs_approval"] is True


# =============================================================================
# Approval tokens
# =============================================================================

class TestApprovalToken:
    def _request_then(self, gw, fleet_call, *admin_calls):
        async def _test():
            await gw.start()
            try:
                first = _payload(await gw.call_tool(*fleet_call))
                approval_id = first["approval_id"]
                results = []
                for build in admin_calls:
                    results.append(await gw.call_tool(*build(approval_id)))
                return approval_id, results
            finally:
                await gw.shutdown()

        return asyncio.run(_test())

    def test_agent_cannot_approve_without_token(self, files_fleet):
        gw = _gateway(files_fleet)
        approval_id, (approve, retried) = self._request_then(
            gw,
            ("mcp__files__read_file", {"path": "/etc/shadow"}),
            lambda aid: ("approve_mcp_request", {"approval_id": aid}),
            lambda aid: (
                "mcp__files__read_file",
                {"path": "/etc/shadow", "_approval_id": aid},
            ),
        )
        assert approve.isError is True
        assert approve.content[0].text == (
            "Missing required argument: approval_token"
        )
        assert "status: pending" in _payload(retried)["error"]
        assert gw.approvals.get_status(approval_id).value == "pending"
        assert files_fleet.calls == []

    def test_wrong_token_rejected(self, files_fleet):
        gw = _gateway(files_fleet)
        approval_id, (approve,) = self._request_then(
            gw,
            ("mcp__files__read_file", {"path": "/x"}),
            lambda aid: (
                "approve_mcp_request",
                {"approval_id": aid, "approval_token": "0" * 64},
            ),
        )
        assert approve.isError is True
        assert approve.content[0].text == (
            f"Invalid approval token for request {approval_id}"
        )
        assert gw.approvals.get_status(approval_id).value == "pending"

    def test_token_is_bound_to_one_request(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                a = _payload(await gw.call_tool(
                    "mcp__files__read_file", {"path": "/a"},
                ))["approval_id"]
                b = _payload(await gw.call_tool(
                    "mcp__files__list_dir", {"path": "/"},
                ))["approval_id"]
                return b, await gw.call_tool("approve_mcp_request", {
                    "approval_id": b,
                    "approval_token": _approval_token(gw, a),
                })
            finally:
                await gw.shutdown()

        b, result = asyncio.run(_test())
        assert result.isError is True
        assert gw.approvals.get_status(b).value == "pending"

    def test_token_printed_to_stderr_not_returned(self, files_fleet, capsys):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                result = await gw.call_tool(
                    "mcp__files__read_file", {"path": "/x"},
                )
                body = _payload(result)
                return result, _approval_token(gw, body["approval_id"])
            finally:
                await gw.shutdown()

        result, token = asyncio.run(_test())
        assert token in capsys.readouterr().err
        assert token not in result.content[0].text
        assert "approval token" in _payload(result)["message"]

    def test_printed_token_approves(self, files_fleet, capsys):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                first = _payload(await gw.call_tool(
                    "mcp__files__read_file", {"path": "/x"},
                ))
                approval_id = first["approval_id"]
                line = next(
                    l for l in capsys.readouterr().err.splitlines()
                    if "Approval token" in l and approval_id in l
                )
                token = line.rsplit(": ", 1)[1]
                return await gw.call_tool("approve_mcp_request", {
                    "approval_id": approval_id, "approval_token": token,
                })
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is False
        assert _payload(result)["approved"] is True

    def test_token_not_required_when_disabled(self, files_fleet, capsys):
        gw = _gateway(files_fleet, require_approval_token=False)
        approval_id, (approve,) = self._request_then(
            gw,
            ("mcp__files__read_file", {"path": "/x"}),
            lambda aid: ("approve_mcp_request", {"approval_id": aid}),
        )
        assert approve.isError is False
        assert gw.approvals.get_status(approval_id).value == "approved"
        assert "Approval token" not in capsys.readouterr().err

    def test_schema_requires_token(self):
        def _approve_required(require_token):
            tool = next(
                t for t in _build_admin_tools(require_token)
                if t.name == "approve_mcp_request"
            )
            return tool.inputSchema["required"]

        assert _approve_required(True) == ["approval_id", "approval_token"]
        assert _approve_required(False) == ["approval_id"]


# =============================================================================
# Administration tools
# =============================================================================

class TestAdminTools:
    def test_missing_arguments(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            return (
                await gw.call_tool("approve_mcp_request", {}),
                await gw.call_tool("deny_mcp_request", None),
                await gw.call_tool("retry_mcp_server", {}),
            )

        approve, deny, retry = asyncio.run(_test())
        assert approve.content[0].text == "Missing required argument: approval_id"
        assert deny.content[0].text == "Missing required argument: approval_id"
        assert retry.content[0].text == "Missing required argument: server"
        assert approve.isError and deny.isError and retry.isError

    def test_unknown_approval_id(self, files_fleet):
        gw = _gateway(files_fleet)
        result = asyncio.run(
            gw.call_tool("approve_mcp_request", {"approval_id": "nope"})
        )
        assert result.isError is True
        assert result.content[0].text == "Approval request nope not found"

    def test_pending_approvals(self, files_fleet):
        gw = _gateway(files_fleet, requester="agent-7")

        async def _test():
            await gw.start()
            try:
                await gw.call_tool("mcp__files__read_file", {"path": "/a"})
                await gw.call_tool(
                    "mcp__files__read_file", {"path": "/b", "token": "s3cret"},
                )
                everything = await gw.call_tool("get_pending_approvals", {})
                mine = await gw.call_tool(
                    "get_pending_approvals", {"requester": "agent-7"},
                )
                others = await gw.call_tool(
                    "get_pending_approvals", {"requester": "someone-else"},
                )
                return everything, mine, others
            finally:
                await gw.shutdown()

        everything, mine, others = asyncio.run(_test())
        body = _payload(everything)
        assert body["count"] == 2
        assert {r["status"] for r in body["requests"]} == {"pending"}
        assert all(r["requester"] == "agent-7" for r in body["requests"])
        assert "s3cret" not in everything.content[0].text
        assert _payload(mine)["count"] == 2
        assert _payload(others) == {"count": 0, "requests": []}

    def test_status(self, files_fleet):
        gw = _gateway(files_fleet)

        async def _test():
            await gw.start()
            try:
                await gw.list_tools()
                return await gw.call_tool("mcp_status", {})
            finally:
                await gw.shutdown()

        body = _payload(asyncio.run(_test()))
        assert body["servers"]["files"]["status"] == "connected"
        assert body["servers"]["files"]["tool_count"] == 2
        assert body["approvals"]["total"] == 0
        assert body["session_approvals"] == []
        assert body["dispatcher"]["approval_mode"] == "always"
        assert body["dispatcher"]["total_functions"] == 2
        assert body["guardrails"] == {"enabled": False, "plugins": []}

    def test_status_lists_loaded_guardrails(self, files_fleet):
        gw = _gateway(
            files_fleet,
            guardrails=GuardrailsConfig(
                enabled=True,
                plugins={
                    "rate_limiter": {},
                    "pii_redactor": {},
                    "pattern_blocker": {"enabled": False},
                },
            ),
        )

        async def _test():
            await gw.start()
            try:
                return gw.status()
            finally:
                await gw.shutdown()

        assert asyncio.run(_test())["guardrails"] == {
            "enabled": True,
            "plugins": ["rate_limiter", "pii_redactor"],
        }

    def test_retry_server(self, fleet, make_tool):
        fleet.configure("files", fail=1, tools=[make_tool("read_file")])
        gw = _gateway(fleet)

        async def _test():
            await gw.start()
            try:
                before = gw.manager.get_connection_status("files")
                result = await gw.call_tool(
                    "retry_mcp_server", {"server": "files"},
                )
                return before, result
            finally:
                await gw.shutdown()

        before, result = asyncio.run(_test())
        assert before == "error"
        assert result.isError is False
        assert _payload(result) == {
            "server": "files", "connected": True, "status": "connected",
        }

    def test_retry_failure_and_unknown_server(self, fleet):
        fleet.configure("files", fail=-1)
        gw = _gateway(fleet)

        async def _test():
            await gw.start()
            try:
                return (
                    await gw.call_tool("retry_mcp_server", {"server": "files"}),
                    await gw.call_tool("retry_mcp_server", {"server": "ghost"}),
                )
            finally:
                await gw.shutdown()

        failed, unknown = asyncio.run(_test())
        assert failed.isError is True
        assert json.loads(failed.content[0].text)["connected"] is False
        assert unknown.content[0].text == "Unknown MCP server: ghost"


# =============================================================================
# Routed call errors
# =============================================================================

class TestRoutedErrors:
    def test_unknown_server_is_error(self, files_fleet):
        gw = _gateway(files_fleet, approval_mode="never")

        async def _test():
            await gw.start()
            try:
                return await gw.call_tool("mcp__ghost__read", {})
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is True
        assert _payload(result)["error"] == "Unknown MCP server: ghost"

    def test_invalid_arguments_rejected(self, files_fleet):
        gw = _gateway(files_fleet, approval_mode="never")

        async def _test():
            await gw.start()
            try:
                return await gw.call_tool("mcp__files__read_file", {})
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is True
        assert "Invalid arguments for files:read_file" in _payload(result)["error"]
        assert files_fleet.calls == []

    def test_guardrail_block_surfaces_as_error(self, files_fleet):
        gw = _gateway(
            files_fleet,
            approval_mode="never",
            guardrails=GuardrailsConfig(
                enabled=True,
                plugins={"pattern_blocker": {"blocked_patterns": ["rm -rf"]}},
            ),
        )

        async def _test():
            await gw.start()
            try:
                return await gw.call_tool(
                    "mcp__files__read_file", {"path": "x; rm -rf /"},
                )
            finally:
                await gw.shutdown()

        result = asyncio.run(_test())
        assert result.isError is True
        assert "rm -rf" in _payload(result)["error"]
        assert files_fleet.calls == []


# =============================================================================
# CLI
# =============================================================================

class TestRunGateway:
    def test_missing_config_exits(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            run_gateway(["--config", str(tmp_path / "missing.yaml")])
        assert exc.value.code == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_config_required(self):
        with pytest.raises(SystemExit):
            run_gateway([])


# =============================================================================
# End to end against a real MCP server
# =============================================================================

MOCK_SERVER_SCRIPT = textwrap.dedent("""\
    import json
    from mcp.server.fastmcp import FastMCP

    mcp = FastMCP("notes")

    @mcp.tool()
    def add_note(title: str, body: str = "") -> str:
        \"\"\"Store a note.\"\"\"
        return json.dumps({"stored": title, "body": body})

    mcp.run(transport="stdio")
""")


@pytest.fixture()
def mock_server_path(tmp_path):
    path = tmp_path / "notes_server.py"
    path.write_text(MOCK_SERVER_SCRIPT)
    return str(path)


class TestEndToEnd:
    def test_call_through_real_server(self, mock_server_path):
        config = GatewayConfig(
            approval_mode="never",
            connect_timeout=20,
            servers=[ServerConfig(
                name="notes", command=sys.executable, args=[mock_server_path],
            )],
            guardrails=GuardrailsConfig(
                enabled=True,
                plugins={"pii_redactor": {"restore_on_response": True}},
            ),
        )
        gw = ToolGateway(config)

        async def _test():
            await gw.start()
            try:
                names = {t.name for t in await gw.list_tools()}
                result = await gw.call_tool(
                    "mcp__notes__add_note",
                    {"title": "call", "body": "mail bob@example.com"},
                )
                return names, result
            finally:
                await gw.shutdown()

        names, result = asyncio.run(_test())
        assert "mcp__notes__add_note" in names
        assert result.isError is False
        body = _payload(result)
        assert body["success"] is True
        text = body["data"]["content"][0]["text"]
        # redacted on the way in, restored on the way out
        assert "bob@example.com" in text
        assert gw.manager.get_connected_servers() == []
