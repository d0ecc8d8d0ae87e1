"""MCP client for a single downstream tool server connection.

Speaks to either a child process over stdio or a remote endpoint over
streamable HTTP, performs the MCP handshake, discovers tools, and
forwards tool calls.  Retry policy lives one level up, in
:mod:`toolgate.gateway.connections`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any

import httpx
from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult

from toolgate.gateway.config import TRANSPORT_HTTP, TRANSPORT_STDIO, ServerConfig

logger = logging.getLogger("toolgate.gateway.mcp_client")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DownstreamError(Exception):
    """Base error for downstream MCP server issues."""


class DownstreamConnectionError(DownstreamError):
    """Failed to connect to, or not connected to, a downstream server."""


class DownstreamTimeoutError(DownstreamConnectionError):
    """A connection attempt exceeded its time ceiling."""


class DownstreamCallError(DownstreamError):
    """A tool call failed at the transport or protocol level."""


# ---------------------------------------------------------------------------
# DownstreamConnection
# ---------------------------------------------------------------------------

class DownstreamConnection:
    """MCP client connection to a single downstream tool server.

    Usage::

        conn = DownstreamConnection("files", command="python", args=["srv.py"])
        await conn.connect()
        try:
            result = await conn.call_tool("read_file", {"path": "/tmp/x"})
        finally:
            await conn.close()

    For ``transport="http"`` pass ``url`` (and optionally ``api_key``,
    sent as ``Authorization: Bearer <api_key>``) instead of ``command``.
    """

    def __init__(
        self,
        name: str,
        *,
        transport: str = TRANSPORT_STDIO,
        command: str | None = None,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._name = name
        self._transport = transport
        self._command = command
        self._args = args or []
        self._env = env
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._session: ClientSession | None = None
        self._tools: list[dict[str, Any]] = []
        self._runner: asyncio.Task | None = None
        self._stop: asyncio.Event | None = None
        self._connected = False

    @classmethod
    def from_config(
        cls, config: ServerConfig, timeout: float = 30.0,
    ) -> DownstreamConnection:
        return cls(
            config.name,
            transport=config.transport,
            command=config.command,
            args=list(config.args),
            env=config.env,
            url=config.url,
            api_key=config.api_key,
            timeout=timeout,
        )

    # -- properties ----------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def connected(self) -> bool:
        """Whether the MCP handshake completed and the session is open."""
        return self._connected

    @property
    def tools(self) -> list[dict[str, Any]]:
        """Tool schemas discovered at connect time (or last ``list_tools``)."""
        return list(self._tools)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport, perform the MCP handshake, discover tools.

        The transport is entered and exited by one owner task that lives
        until :meth:`close`; the MCP SDK's anyio cancel scopes must be
        exited in the task that entered them, and the caller's task may be
        a short-lived ``gather`` or ``wait_for`` child.

        Raises:
            DownstreamConnectionError: If the transport cannot be opened or
                the handshake fails.
            DownstreamTimeoutError: If the handshake or tool discovery
                exceeds the timeout.
        """
        if self._connected or self._runner is not None:
            raise DownstreamConnectionError("Already connected")

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(
            self._run(ready, self._stop), name=f"mcp-{self._name}",
        )
        try:
            await ready
        except BaseException:
            await self.close()
            raise

    async def _run(self, ready: asyncio.Future[None], stop: asyncio.Event) -> None:
        """Own the transport for the lifetime of the connection."""
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await self._open_transport(stack)
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await asyncio.wait_for(
                    session.initialize(), timeout=self._timeout,
                )
                tools_result = await asyncio.wait_for(
                    session.list_tools(), timeout=self._timeout,
                )

                self._tools = [_tool_to_dict(t) for t in tools_result.tools]
                self._session = session
                self._connected = True
                if not ready.done():
                    ready.set_result(None)

                await stop.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(self._connect_error(e))
            else:
                logger.debug(
                    "Error closing transport for %s", self._name, exc_info=True,
                )
        finally:
            self._connected = False
            self._session = None

    def _connect_error(self, error: Exception) -> DownstreamError:
        if isinstance(error, DownstreamError):
            return error
        if isinstance(error, asyncio.TimeoutError):
            return DownstreamTimeoutError(
                f"Connection to '{self._describe()}' timed out "
                f"after {self._timeout:g}s"
            )
        if isinstance(error, OSError):
            return DownstreamConnectionError(
                f"Failed to start '{self._describe()}': {error}"
            )
        return DownstreamConnectionError(
            f"Failed to connect to '{self._describe()}': "
            f"{type(error).__name__}: {error}"
        )

    async def _open_transport(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        if self._transport == TRANSPORT_STDIO:
            if not self._command:
                raise DownstreamConnectionError(
                    f"stdio server {self._name} requires command"
                )
            params = StdioServerParameters(
                command=self._command,
                args=self._args,
                env=self._env,
            )
            return await stack.enter_async_context(stdio_client(params))

        if self._transport == TRANSPORT_HTTP:
            if not self._url:
                raise DownstreamConnectionError(
                    f"http server {self._name} requires url"
                )
            headers: dict[str, str] = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            read_stream, write_stream, _get_session_id = (
                await stack.enter_async_context(
                    streamablehttp_client(
                        url=self._url,
                        headers=headers or None,
                        timeout=timedelta(seconds=self._timeout),
                        httpx_client_factory=_http_client_factory,
                    )
                )
            )
            return read_stream, write_stream

        raise DownstreamConnectionError(
            f"Unsupported transport type: {self._transport}"
        )

    async def close(self) -> None:
        """Shut down the session and release the transport."""
        runner, self._runner = self._runner, None
        was_connected = self._connected
        self._connected = False
        self._session = None
        self._tools = []
        if runner is None:
            return
        if self._stop is not None:
            self._stop.set()
        if not was_connected:
            runner.cancel()
        # the runner logs its own teardown errors
        await asyncio.gather(runner, return_exceptions=True)

    async def list_tools(self) -> list[dict[str, Any]]:
        """Re-discover tools from the downstream server.

        Also serves as the lightweight health probe.

        Raises:
            DownstreamConnectionError: If not connected or the call fails.
        """
        if not self._connected or self._session is None:
            raise DownstreamConnectionError(
                f"MCP server {self._name} not connected"
            )
        try:
            tools_result = await self._session.list_tools()
        except Exception as e:
            raise DownstreamConnectionError(
                f"list_tools failed: {type(e).__name__}: {e}"
            ) from e
        self._tools = [_tool_to_dict(t) for t in tools_result.tools]
        return list(self._tools)

    # -- tool calls ----------------------------------------------------------

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Forward a tool call. Tool-level errors come back as
        ``isError=True`` results; transport failures raise.

        Raises:
            DownstreamConnectionError: If not connected.
            DownstreamCallError: If the call itself fails.
        """
        if not self._connected or self._session is None:
            raise DownstreamConnectionError(
                f"MCP server {self._name} not connected"
            )
        try:
            return await self._session.call_tool(name, arguments)
        except Exception as e:
            raise DownstreamCallError(
                f"Tool call '{name}' failed: {type(e).__name__}: {e}"
            ) from e

    # -- context manager -----------------------------------------------------

    async def __aenter__(self) -> DownstreamConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _describe(self) -> str:
        if self._transport == TRANSPORT_HTTP:
            return self._url or self._name
        return self._command or self._name


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _http_client_factory(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
) -> httpx.AsyncClient:
    """httpx client for streamable HTTP; redirects are not followed so the
    bearer token is never replayed to another host."""
    return httpx.AsyncClient(
        headers=headers,
        timeout=timeout if timeout is not None else httpx.Timeout(30.0),
        auth=auth,
        follow_redirects=False,
    )


def _tool_to_dict(tool: Any) -> dict[str, Any]:
    """Convert an MCP Tool object to a plain dict preserving all fields."""
    return tool.model_dump(exclude_none=True)

