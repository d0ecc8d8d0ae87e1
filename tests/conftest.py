"""Shared fakes for the toolgate test suite.

``FakeFleet`` stands in for real MCP servers: it builds
``FakeConnection`` handles through the ``connection_factory`` hook of
``ConnectionManager`` and records every connect attempt and tool call.
"""

import asyncio
import json

import pytest


class FakeConnection:
    """In-memory stand-in for ``DownstreamConnection``."""

    def __init__(self, fleet, name):
        self._fleet = fleet
        self.name = name
        self.connected = False
        self.closed = False
        self.calls = []

    @property
    def tools(self):
        return [dict(t) for t in self._fleet.tools_for(self.name)]

    async def connect(self):
        from toolgate.gateway.mcp_client import DownstreamConnectionError

        self._fleet.attempts.setdefault(self.name, 0)
        self._fleet.attempts[self.name] += 1
        behaviour = self._fleet.behaviour(self.name)
        if behaviour.get("hang"):
            await asyncio.Event().wait()
        remaining = behaviour.get("fail", 0)
        if remaining:
            if remaining > 0:
                behaviour["fail"] = remaining - 1
            raise DownstreamConnectionError(f"cannot start {self.name}")
        self.connected = True

    async def close(self):
        self.connected = False
        self.closed = True

    async def list_tools(self):
        from toolgate.gateway.mcp_client import DownstreamConnectionError

        if not self.connected or self._fleet.behaviour(self.name).get("list_fails"):
            raise DownstreamConnectionError(f"{self.name} not connected")
        return self.tools

    async def call_tool(self, name, arguments=None):
        from toolgate.gateway.mcp_client import DownstreamCallError

        self.calls.append((name, dict(arguments or {})))
        self._fleet.calls.append((self.name, name, dict(arguments or {})))
        behaviour = self._fleet.behaviour(self.name)
        if behaviour.get("call_error"):
            raise DownstreamCallError(f"Tool call '{name}' failed: boom")
        handler = behaviour.get("handler")
        if handler is not None:
            return handler(name, arguments or {})
        return {
            "content": [{"type": "text", "text": json.dumps(arguments or {})}],
            "isError": False,
        }


class FakeFleet:
    """Per-server behaviour for fake connections.

    Behaviour keys: ``tools`` (list of tool dicts), ``fail`` (number of
    connect attempts to fail, ``-1`` for always), ``hang`` (connect never
    returns), ``list_fails``, ``call_error``, ``handler`` (callable
    returning the tool result).
    """

    def __init__(self):
        self._behaviours = {}
        self.attempts = {}
        self.created = []
        self.calls = []

    def configure(self, name, **behaviour):
        self._behaviours.setdefault(name, {}).update(behaviour)

    def behaviour(self, name):
        return self._behaviours.setdefault(name, {})

    def tools_for(self, name):
        return self.behaviour(name).get("tools", [])

    def factory(self, config):
        conn = FakeConnection(self, config.name)
        self.created.append(conn)
        return conn


class RecordingSleep:
    """Async ``sleep`` replacement that records delays without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def tool(name, properties=None, required=None, description=""):
    """Tool dict as returned by ``DownstreamConnection.tools``."""
    return {
        "name": name,
        "description": description or f"{name} tool",
        "inputSchema": {
            "type": "object",
            "properties": properties or {},
            "required": required or [],
        },
    }


@pytest.fixture()
def fleet():
    return FakeFleet()


@pytest.fixture()
def sleeps():
    return RecordingSleep()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def make_tool():
    return tool
