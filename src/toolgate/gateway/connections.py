"""Connection manager for downstream MCP tool servers.

Owns one :class:`DownstreamConnection` per configured server, connects
them concurrently at startup, retries each connection with exponential
backoff, and routes tool discovery and tool calls to the right handle.

Only connection establishment is retried.  A failed tool call is
reported to the caller as-is.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from toolgate.gateway.config import ServerConfig
from toolgate.gateway.mcp_client import (
    DownstreamConnection,
    DownstreamConnectionError,
    DownstreamTimeoutError,
)
from toolgate.utils.sanitize import redact_sensitive

logger = logging.getLogger("toolgate.gateway.connections")

# Fixed ceiling for one connection attempt (seconds)
_DEFAULT_CONNECT_TIMEOUT = 30.0

ConnectionFactory = Callable[[ServerConfig], DownstreamConnection]
SleepFn = Callable[[float], Awaitable[Any]]


class ConnectionStatus(enum.Enum):
    """Lifecycle status of a downstream server connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionState:
    """Per-server connection bookkeeping.

    ``attempts`` is the number of the attempt in progress while
    connecting, the total made once retries are exhausted, and ``0``
    after a successful connect.
    """
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempts: int = 0
    last_attempt: float | None = None


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool exposed by a downstream server."""
    server_name: str
    name: str
    description: str
    input_schema: dict[str, Any]

    @classmethod
    def from_dict(cls, server_name: str, tool: dict[str, Any]) -> ToolDescriptor:
        return cls(
            server_name=server_name,
            name=tool["name"],
            description=tool.get("description") or "",
            input_schema=tool.get("inputSchema") or {},
        )


class ConnectionManager:
    """Manages connections to every enabled downstream server.

    Args:
        configs: Server configurations.  Disabled entries are ignored.
        connect_timeout: Ceiling for a single connection attempt.
        connection_factory: Builds an unconnected handle for a config.
            Defaults to :meth:`DownstreamConnection.from_config`.
        sleep: Awaitable used for backoff delays.
    """

    def __init__(
        self,
        configs: list[ServerConfig] | None = None,
        *,
        connect_timeout: float = _DEFAULT_CONNECT_TIMEOUT,
        connection_factory: ConnectionFactory | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._configs: dict[str, ServerConfig] = {
            c.name: c for c in (configs or []) if c.enabled
        }
        self._connect_timeout = connect_timeout
        self._connection_factory = connection_factory or (
            lambda cfg: DownstreamConnection.from_config(cfg, connect_timeout)
        )
        self._sleep = sleep
        self._connections: dict[str, DownstreamConnection] = {}
        self._states: dict[str, ConnectionState] = {}
        self._tool_cache: dict[str, list[ToolDescriptor]] = {}

    # -- properties ----------------------------------------------------------

    @property
    def server_names(self) -> list[str]:
        """Names of all enabled, configured servers."""
        return list(self._configs)

    def has_server(self, name: str) -> bool:
        return name in self._configs

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> tuple[int, int]:
        """Connect to every enabled server concurrently.

        A failure on one server never affects another.  Returns
        ``(connected, total)``.
        """
        names = list(self._configs)
        logger.info(
            "Initializing connection manager with %d servers", len(names),
        )

        results = await asyncio.gather(
            *(self.connect(name) for name in names),
            return_exceptions=True,
        )

        success_count = 0
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self._state(name).status = ConnectionStatus.ERROR
                logger.error(
                    "Failed to connect to MCP server %s: %s", name, result,
                )
            else:
                success_count += 1
                logger.info("Successfully connected to MCP server: %s", name)

        logger.info(
            "Connection manager initialized: %d/%d servers connected",
            success_count,
            len(names),
        )
        return success_count, len(names)

    async def connect(self, name: str) -> DownstreamConnection:
        """Connect to one server, retrying with exponential backoff.

        Makes up to ``retry.max_attempts + 1`` sequential attempts.  Each
        attempt is cancelled and its handle closed if it exceeds the
        connect timeout.

        Raises:
            DownstreamConnectionError: Unknown server, or all attempts
                failed.  Status is left at ``error``.
        """
        config = self._configs.get(name)
        if config is None:
            raise DownstreamConnectionError(
                f"Server config not found for {name}"
            )

        existing = self.get_client(name)
        if existing is not None:
            logger.warning("MCP server %s already connected", name)
            return existing

        policy = config.retry
        state = self._state(name)
        last_error: Exception | None = None

        for attempt in range(policy.max_attempts + 1):
            state.status = ConnectionStatus.CONNECTING
            state.attempts = attempt
            state.last_attempt = time.time()

            if attempt > 0:
                delay = policy.delay_for(attempt)
                logger.info(
                    "Retrying connection to MCP server %s "
                    "(attempt %d/%d) after %dms",
                    name, attempt, policy.max_attempts, int(delay * 1000),
                )
                await self._sleep(delay)

            conn = self._connection_factory(config)
            try:
                await asyncio.wait_for(
                    conn.connect(), timeout=self._connect_timeout,
                )
            except asyncio.TimeoutError:
                await conn.close()
                last_error = DownstreamTimeoutError(
                    f"Connection to MCP server {name} timed out after "
                    f"{self._connect_timeout:g}s"
                )
            except Exception as e:
                await conn.close()
                last_error = e
            else:
                await self._install(name, conn)
                logger.info(
                    "Connected to MCP server: %s (%s) after %d retries",
                    name, config.transport, attempt,
                )
                return conn

            logger.warning(
                "Failed to connect to MCP server %s (attempt %d/%d): %s",
                name, attempt + 1, policy.max_attempts + 1, last_error,
            )

        state.status = ConnectionStatus.ERROR
        state.attempts = policy.max_attempts + 1
        state.last_attempt = time.time()
        logger.error("All retry attempts exhausted for MCP server %s", name)
        raise DownstreamConnectionError(
            f"Failed to connect to MCP server {name} after "
            f"{policy.max_attempts + 1} attempts: {last_error}"
        ) from last_error

    async def _install(self, name: str, conn: DownstreamConnection) -> None:
        """Make *conn* the only live handle for *name*."""
        previous = self._connections.pop(name, None)
        if previous is not None and previous is not conn:
            await previous.close()
        self._connections[name] = conn
        self._tool_cache[name] = [
            ToolDescriptor.from_dict(name, t) for t in conn.tools
        ]
        state = self._state(name)
        state.status = ConnectionStatus.CONNECTED
        state.attempts = 0

    async def retry_connection(self, name: str) -> bool:
        """Drop any existing handle and reconnect from a clean retry count.

        Returns ``True`` on success, ``False`` on failure or unknown server.
        """
        if name not in self._configs:
            logger.error("Server config not found for %s", name)
            return False

        existing = self._connections.pop(name, None)
        if existing is not None:
            await existing.close()
        self._tool_cache.pop(name, None)
        self._states[name] = ConnectionState()

        try:
            await self.connect(name)
            return True
        except DownstreamConnectionError as e:
            logger.error("Manual retry failed for %s: %s", name, e)
            return False

    async def disconnect_all(self) -> None:
        """Close every open handle. Errors are logged, never raised."""
        logger.info("Disconnecting all MCP clients")

        async def _close(name: str, conn: DownstreamConnection) -> None:
            try:
                await conn.close()
                logger.info("Disconnected from MCP server: %s", name)
            except Exception as e:
                logger.error(
                    "Error disconnecting from MCP server %s: %s", name, e,
                )
            self._state(name).status = ConnectionStatus.DISCONNECTED

        await asyncio.gather(
            *(_close(n, c) for n, c in self._connections.items()),
        )
        self._connections.clear()
        self._tool_cache.clear()

    # -- lookup --------------------------------------------------------------

    def get_client(self, name: str) -> DownstreamConnection | None:
        """Return the live handle for *name*, or ``None`` if not connected."""
        conn = self._connections.get(name)
        state = self._states.get(name)
        if conn is None or state is None:
            return None
        if state.status is not ConnectionStatus.CONNECTED:
            return None
        return conn

    def get_connection_status(self, name: str) -> str:
        state = self._states.get(name)
        return state.status.value if state is not None else "unknown"

    def get_connected_servers(self) -> list[str]:
        return [n for n in self._connections if self.get_client(n) is not None]

    def get_retry_info(self, name: str) -> ConnectionState | None:
        return self._states.get(name)

    def get_status(self) -> dict[str, dict[str, Any]]:
        """Status summary for every configured server."""
        status: dict[str, dict[str, Any]] = {}
        for name, config in self._configs.items():
            state = self._states.get(name)
            entry: dict[str, Any] = {
                "status": state.status.value if state else "unknown",
                "transport": config.transport,
            }
            if name in self._tool_cache:
                entry["tool_count"] = len(self._tool_cache[name])
            if state is not None and state.last_attempt is not None:
                entry["retry_attempts"] = state.attempts
                entry["last_attempt"] = state.last_attempt
            status[name] = entry
        return status

    def cached_tools(self, name: str) -> list[ToolDescriptor] | None:
        """Last discovered tools for *name*, or ``None`` if never listed."""
        tools = self._tool_cache.get(name)
        return list(tools) if tools is not None else None

    # -- tools ---------------------------------------------------------------

    async def list_tools(self, name: str) -> list[ToolDescriptor]:
        """List tools on one connected server and refresh its cache.

        Raises:
            DownstreamConnectionError: If not connected or listing fails.
        """
        conn = self._require_client(name)
        try:
            raw_tools = await conn.list_tools()
        except Exception as e:
            logger.error("Failed to list tools from %s: %s", name, e)
            raise
        tools = [ToolDescriptor.from_dict(name, t) for t in raw_tools]
        self._tool_cache[name] = tools
        return list(tools)

    async def list_all_tools(self) -> list[ToolDescriptor]:
        """List tools on every connected server.

        Servers that fail to answer are logged and left out of the result.
        """
        all_tools: list[ToolDescriptor] = []
        for name in self.get_connected_servers():
            try:
                tools = await self.list_tools(name)
            except Exception as e:
                logger.error("Failed to list tools from %s: %s", name, e)
                continue
            logger.debug("Listed %d tools from %s", len(tools), name)
            all_tools.extend(tools)
        logger.debug("Total MCP tools available: %d", len(all_tools))
        return all_tools

    async def call_tool(
        self, server: str, tool: str, arguments: dict[str, Any],
    ) -> Any:
        """Invoke *tool* on *server*. Never retried here.

        Raises:
            DownstreamConnectionError: If *server* has no live handle.
            DownstreamCallError: If the call fails at the transport level.
        """
        conn = self._require_client(server)
        logger.debug(
            "Calling MCP tool %s:%s with args: %s",
            server, tool, redact_sensitive(arguments),
        )
        try:
            result = await conn.call_tool(tool, arguments)
        except Exception as e:
            logger.error("Failed to call MCP tool %s:%s: %s", server, tool, e)
            raise
        logger.debug("MCP tool %s:%s returned", server, tool)
        return result

    async def health_check(self) -> dict[str, bool]:
        """Probe every tracked handle with ``list_tools``.

        A passing probe sets status to ``connected``; a failing one to
        ``error``.
        """
        health: dict[str, bool] = {}
        for name, conn in list(self._connections.items()):
            try:
                await conn.list_tools()
            except Exception as e:
                health[name] = False
                self._state(name).status = ConnectionStatus.ERROR
                logger.warning(
                    "Health check failed for MCP server %s: %s", name, e,
                )
            else:
                health[name] = True
                self._state(name).status = ConnectionStatus.CONNECTED
        return health

    # -- internals -----------------------------------------------------------

    def _state(self, name: str) -> ConnectionState:
        state = self._states.get(name)
        if state is None:
            state = ConnectionState()
            self._states[name] = state
        return state

    def _require_client(self, name: str) -> DownstreamConnection:
        conn = self.get_client(name)
        if conn is None:
            raise DownstreamConnectionError(
                f"MCP server {name} not connected"
            )
        return conn
