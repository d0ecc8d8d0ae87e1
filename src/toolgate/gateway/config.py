"""Gateway YAML config loader and validator.

Parses ``gateway.yaml`` into validated dataclasses, resolves environment
variables, and fails fast on anything the runtime could not act on.

Config shape::

    gateway:
      requester: agent
      approval_mode: trusted          # always | trusted | never
      approval_timeout: 300
      trusted_tools: ["search", "files:read_file"]
      trusted_tools_by_server:
        files: ["*"]

    servers:
      - name: files
        transport: stdio
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
        env:
          FILES_TOKEN: "${FILES_TOKEN}"
        retry_attempts: 3
        retry_delay_ms: 1000
      - name: remote
        transport: http
        url: https://tools.example.com/mcp
        api_key: "${REMOTE_KEY}"

    guardrails:
      enabled: true
      fail_open: false
      plugins:
        rate_limiter:
          enabled: true
          requests_per_minute: 30
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from toolgate.utils.safe_yaml import safe_yaml_load

logger = logging.getLogger("toolgate.gateway.config")

TRANSPORT_STDIO = "stdio"
TRANSPORT_HTTP = "http"

# "process" / "network" are accepted as synonyms
_TRANSPORT_ALIASES = {
    "stdio": TRANSPORT_STDIO,
    "process": TRANSPORT_STDIO,
    "http": TRANSPORT_HTTP,
    "network": TRANSPORT_HTTP,
}

APPROVAL_MODES = ("always", "trusted", "never")

_VALID_PATTERN_ACTIONS = frozenset({"block", "warn", "redact"})

_SERVER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Pattern for ${VAR_NAME} interpolation
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GatewayConfigError(Exception):
    """Raised when the gateway config is invalid."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Connection retry policy for one tool server.

    Attempt ``k`` (``k >= 1``) waits ``initial_delay_ms * 2 ** (k - 1)``
    milliseconds first; at most ``max_attempts + 1`` attempts are made.
    """
    max_attempts: int = 3
    initial_delay_ms: int = 1000

    def delay_for(self, attempt: int) -> float:
        """Backoff delay in seconds before *attempt* (0 for the first)."""
        if attempt <= 0:
            return 0.0
        return self.initial_delay_ms * (2 ** (attempt - 1)) / 1000.0


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for a single downstream MCP tool server."""
    name: str
    transport: str = TRANSPORT_STDIO
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    url: str | None = None
    api_key: str | None = None
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class GuardrailsConfig:
    """Guardrail pipeline settings.

    ``plugins`` maps a registered plugin name to its raw config mapping;
    each plugin validates its own keys on ``initialize``.
    """
    enabled: bool = False
    fail_open: bool = False
    log_violations: bool = True
    log_modifications: bool = False
    plugins: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""
    requester: str = "agent"
    approval_mode: str = "always"
    approval_timeout: float = 300.0
    approval_retention: float = 3600.0
    sweep_interval: float = 60.0
    connect_timeout: float = 30.0
    trusted_tools: list[str] = field(default_factory=list)
    trusted_tools_by_server: dict[str, list[str]] = field(default_factory=dict)
    servers: list[ServerConfig] = field(default_factory=list)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def load_gateway_config(config_path: str) -> GatewayConfig:
    """Load and validate a gateway YAML config file.

    Raises:
        GatewayConfigError: If the file is missing, is not valid YAML, or
            fails validation.
    """
    config_file = Path(os.path.expanduser(config_path)).resolve()
    if not config_file.is_file():
        raise GatewayConfigError(f"Config file not found: {config_path}")

    try:
        raw = safe_yaml_load(config_file.read_text())
    except (yaml.YAMLError, ValueError) as e:
        raise GatewayConfigError(f"Invalid YAML in config file: {e}") from e

    return parse_gateway_config(raw)


def parse_gateway_config(raw: Any) -> GatewayConfig:
    """Validate an already-parsed config mapping."""
    if not isinstance(raw, dict):
        raise GatewayConfigError(
            "Config file must contain a YAML mapping (got "
            f"{type(raw).__name__})"
        )

    gw_raw = raw.get("gateway")
    if not isinstance(gw_raw, dict):
        gw_raw = {}

    requester = str(gw_raw.get("requester", "agent"))

    approval_mode = str(gw_raw.get("approval_mode", "always"))
    if approval_mode not in APPROVAL_MODES:
        raise GatewayConfigError(
            f"Invalid approval_mode: '{approval_mode}'. "
            f"Must be one of: {', '.join(APPROVAL_MODES)}"
        )

    approval_timeout = _as_float(gw_raw, "approval_timeout", 300.0, "gateway")
    if not 30 <= approval_timeout <= 3600:
        raise GatewayConfigError(
            "gateway.approval_timeout must be between 30 and 3600 seconds "
            f"(got {approval_timeout:g})"
        )

    approval_retention = _as_float(
        gw_raw, "approval_retention", 3600.0, "gateway",
    )
    sweep_interval = _as_float(gw_raw, "sweep_interval", 60.0, "gateway")
    connect_timeout = _as_float(gw_raw, "connect_timeout", 30.0, "gateway")
    for key, value in (
        ("approval_retention", approval_retention),
        ("sweep_interval", sweep_interval),
        ("connect_timeout", connect_timeout),
    ):
        if value <= 0:
            raise GatewayConfigError(f"gateway.{key} must be positive")

    trusted_tools = _as_str_list(
        gw_raw.get("trusted_tools", []), "gateway.trusted_tools",
    )

    by_server_raw = gw_raw.get("trusted_tools_by_server") or {}
    if not isinstance(by_server_raw, dict):
        raise GatewayConfigError(
            "gateway.trusted_tools_by_server: expected a mapping"
        )
    trusted_tools_by_server = {
        str(server): _as_str_list(
            tools, f"gateway.trusted_tools_by_server.{server}",
        )
        for server, tools in by_server_raw.items()
    }

    # -- servers section --
    servers_raw = raw.get("servers", [])
    if servers_raw is None:
        servers_raw = []
    if not isinstance(servers_raw, list):
        raise GatewayConfigError("servers: expected a list")

    servers: list[ServerConfig] = []
    seen_names: set[str] = set()
    for idx, entry in enumerate(servers_raw):
        if not isinstance(entry, dict):
            raise GatewayConfigError(
                f"servers[{idx}]: expected a mapping, "
                f"got {type(entry).__name__}"
            )
        server = _parse_server(entry, idx)
        if server.name in seen_names:
            raise GatewayConfigError(
                f"servers[{idx}]: duplicate server name '{server.name}'"
            )
        seen_names.add(server.name)
        servers.append(server)

    for server_name in trusted_tools_by_server:
        if server_name not in seen_names:
            logger.warning(
                "trusted_tools_by_server references unknown server '%s'",
                server_name,
            )

    guardrails = _parse_guardrails(raw.get("guardrails"))

    return GatewayConfig(
        requester=requester,
        approval_mode=approval_mode,
        approval_timeout=approval_timeout,
        approval_retention=approval_retention,
        sweep_interval=sweep_interval,
        connect_timeout=connect_timeout,
        trusted_tools=trusted_tools,
        trusted_tools_by_server=trusted_tools_by_server,
        servers=servers,
        guardrails=guardrails,
    )


def _parse_server(raw: dict[str, Any], idx: int) -> ServerConfig:
    """Parse and validate a single ``servers`` entry."""
    prefix = f"servers[{idx}]"

    name = raw.get("name")
    if not name:
        raise GatewayConfigError(f"{prefix}: missing required field 'name'")
    name = str(name)
    if not _SERVER_NAME_PATTERN.match(name):
        raise GatewayConfigError(
            f"{prefix}: server name '{name}' contains invalid characters. "
            f"Use alphanumeric, hyphens, and underscores only."
        )
    if "__" in name:
        raise GatewayConfigError(
            f"{prefix}: server name '{name}' must not contain '__' "
            f"(reserved as the function namespace separator)"
        )

    transport_raw = str(raw.get("transport", raw.get("type", TRANSPORT_STDIO)))
    transport = _TRANSPORT_ALIASES.get(transport_raw.lower())
    if transport is None:
        raise GatewayConfigError(
            f"{prefix}: unsupported transport '{transport_raw}'. "
            f"Must be one of: {', '.join(sorted(_TRANSPORT_ALIASES))}"
        )

    command: str | None = None
    args: list[str] = []
    env: dict[str, str] | None = None
    url: str | None = None
    api_key: str | None = None

    if transport == TRANSPORT_STDIO:
        command = raw.get("command")
        if not command:
            raise GatewayConfigError(
                f"{prefix}: stdio server '{name}' requires 'command'"
            )
        command = str(command)
        args_raw = raw.get("args", [])
        if not isinstance(args_raw, list):
            args = [str(args_raw)]
        else:
            args = [str(a) for a in args_raw]
        env_raw = raw.get("env")
        if isinstance(env_raw, dict):
            env = {
                str(key): _interpolate_env(str(value), f"{prefix}.env.{key}")
                for key, value in env_raw.items()
            }
    else:
        url_raw = raw.get("url")
        if not url_raw:
            raise GatewayConfigError(
                f"{prefix}: http server '{name}' requires 'url'"
            )
        url = _interpolate_env(str(url_raw), f"{prefix}.url")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise GatewayConfigError(
                f"{prefix}: url must be an absolute http(s) URL, got '{url}'"
            )
        key_raw = raw.get("api_key")
        if key_raw:
            api_key = _interpolate_env(str(key_raw), f"{prefix}.api_key")

    try:
        retry_attempts = int(raw.get("retry_attempts", 3))
        retry_delay_ms = int(raw.get("retry_delay_ms", raw.get("retry_delay", 1000)))
    except (TypeError, ValueError):
        raise GatewayConfigError(
            f"{prefix}: retry_attempts and retry_delay_ms must be integers"
        ) from None
    if retry_attempts < 0 or retry_delay_ms < 0:
        raise GatewayConfigError(
            f"{prefix}: retry_attempts and retry_delay_ms must be >= 0"
        )

    return ServerConfig(
        name=name,
        transport=transport,
        command=command,
        args=args,
        env=env,
        url=url,
        api_key=api_key,
        enabled=bool(raw.get("enabled", True)),
        retry=RetryPolicy(
            max_attempts=retry_attempts,
            initial_delay_ms=retry_delay_ms,
        ),
    )


def _parse_guardrails(raw: Any) -> GuardrailsConfig:
    """Parse the ``guardrails`` section. Missing section means disabled."""
    if raw is None:
        return GuardrailsConfig()
    if not isinstance(raw, dict):
        raise GatewayConfigError("guardrails: expected a mapping")

    from toolgate.guardrails.plugins import PLUGIN_REGISTRY

    plugins_raw = raw.get("plugins") or {}
    if not isinstance(plugins_raw, dict):
        raise GatewayConfigError("guardrails.plugins: expected a mapping")

    plugins: dict[str, dict[str, Any]] = {}
    for plugin_name, plugin_cfg in plugins_raw.items():
        plugin_name = str(plugin_name)
        if plugin_name not in PLUGIN_REGISTRY:
            raise GatewayConfigError(
                f"guardrails.plugins: unknown plugin '{plugin_name}'. "
                f"Known plugins: {', '.join(sorted(PLUGIN_REGISTRY))}"
            )
        if plugin_cfg is None:
            plugin_cfg = {}
        if not isinstance(plugin_cfg, dict):
            raise GatewayConfigError(
                f"guardrails.plugins.{plugin_name}: expected a mapping"
            )
        action = plugin_cfg.get("action_on_match")
        if action is not None and str(action) not in _VALID_PATTERN_ACTIONS:
            raise GatewayConfigError(
                f"guardrails.plugins.{plugin_name}: invalid action_on_match "
                f"'{action}'. Must be one of: "
                f"{', '.join(sorted(_VALID_PATTERN_ACTIONS))}"
            )
        plugins[plugin_name] = dict(plugin_cfg)

    return GuardrailsConfig(
        enabled=bool(raw.get("enabled", False)),
        fail_open=bool(raw.get("fail_open", False)),
        log_violations=bool(raw.get("log_violations", True)),
        log_modifications=bool(raw.get("log_modifications", False)),
        plugins=plugins,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _as_float(raw: dict[str, Any], key: str, default: float, section: str) -> float:
    value = raw.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise GatewayConfigError(
            f"{section}.{key}: expected a number, got {value!r}"
        ) from None


def _as_str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise GatewayConfigError(f"{where}: expected a list of strings")
    return [str(v) for v in value]


def _interpolate_env(value: str, where: str) -> str:
    """Resolve ``${VAR_NAME}`` patterns from ``os.environ``.

    Raises:
        GatewayConfigError: If a referenced env var is not set.
    """
    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        resolved = os.environ.get(var_name)
        if resolved is None:
            raise GatewayConfigError(
                f"{where}: environment variable '{var_name}' is not set"
            )
        return resolved

    return _ENV_VAR_PATTERN.sub(_replacer, value)
