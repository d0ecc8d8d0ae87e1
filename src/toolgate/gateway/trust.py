"""Standing trust for tools, at global and per-server scope.

Resolution order for ``(server, tool)``:

1. If the server has its own trusted set, only that set is consulted.
   It matches ``"*"`` (every tool on the server), the bare tool name, or
   ``"server:tool"``.
2. Otherwise the global set is consulted, matching the bare tool name or
   ``"server:tool"``.

A server-specific set always shadows the global set, even when it does
not list the tool.  Session-scoped trust lives in
:class:`toolgate.gateway.approval.ApprovalStore`.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

logger = logging.getLogger("toolgate.gateway.trust")

WILDCARD = "*"


def tool_key(server_name: str, tool_name: str) -> str:
    """The ``"server:tool"`` form used in trusted sets."""
    return f"{server_name}:{tool_name}"


class TrustPolicy:
    """Global and per-server trusted tool sets."""

    def __init__(
        self,
        trusted_tools: Iterable[str] = (),
        trusted_tools_by_server: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._global: frozenset[str] = frozenset()
        self._by_server: dict[str, frozenset[str]] = {}
        self.update(trusted_tools, trusted_tools_by_server)

    def update(
        self,
        trusted_tools: Iterable[str],
        trusted_tools_by_server: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        """Replace the global set and, if given, every per-server set."""
        self._global = frozenset(trusted_tools)
        logger.info(
            "Global trusted tools: %s", ", ".join(sorted(self._global)) or "-",
        )
        if trusted_tools_by_server is not None:
            self._by_server = {
                server: frozenset(tools)
                for server, tools in trusted_tools_by_server.items()
            }
            for server, tools in self._by_server.items():
                logger.info(
                    "Trusted tools for server %s: %s",
                    server, ", ".join(sorted(tools)) or "-",
                )

    @property
    def global_tools(self) -> frozenset[str]:
        return self._global

    def server_tools(self, server_name: str) -> frozenset[str] | None:
        return self._by_server.get(server_name)

    def is_trusted(self, server_name: str, tool_name: str) -> bool:
        key = tool_key(server_name, tool_name)
        server_set = self._by_server.get(server_name)
        if server_set is not None:
            trusted = (
                WILDCARD in server_set
                or tool_name in server_set
                or key in server_set
            )
            logger.debug(
                "Server-specific trust check for %s: %s", key, trusted,
            )
            return trusted

        trusted = key in self._global or tool_name in self._global
        logger.debug("Global trust check for %s: %s", key, trusted)
        return trusted
