"""Tests for gateway YAML config parsing and validation."""

import textwrap

import pytest

from toolgate.gateway import config as config_module
from toolgate.gateway.config import (
    GatewayConfigError,
    RetryPolicy,
    load_gateway_config,
    parse_gateway_config,
)
from toolgate.utils.safe_yaml import safe_yaml_load


# =============================================================================
# HELPERS
# =============================================================================

def _write(tmp_path, text):
    path = tmp_path / "gateway.yaml"
    path.write_text(textwrap.dedent(text))
    return str(path)


def _stdio(name="files", **extra):
    entry = {"name": name, "transport": "stdio", "command": "npx"}
    entry.update(extra)
    return entry


# =============================================================================
# LOADING
# =============================================================================

class TestLoad:
    def test_full_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REMOTE_KEY", "sekrit")
        path = _write(tmp_path, """\
            gateway:
              requester: claude
              approval_mode: trusted
              approval_timeout: 120
              trusted_tools: [search, "files:read_file"]
              trusted_tools_by_server:
                files: ["*"]
            servers:
              - name: files
                transport: stdio
                command: npx
                args: ["-y", "server-filesystem", "/tmp"]
                retry_attempts: 2
                retry_delay_ms: 250
              - name: remote
                transport: http
                url: https://tools.example.com/mcp
                api_key: "${REMOTE_KEY}"
            guardrails:
              enabled: true
              fail_open: true
              plugins:
                rate_limiter:
                  requests_per_minute: 10
        """)
        config = load_gateway_config(path)
        assert config.requester == "claude"
        assert config.approval_mode == "trusted"
        assert config.approval_timeout == 120
        assert config.trusted_tools == ["search", "files:read_file"]
        assert config.trusted_tools_by_server == {"files": ["*"]}

        files, remote = config.servers
        assert files.transport == "stdio"
        assert files.args == ["-y", "server-filesystem", "/tmp"]
        assert files.retry == RetryPolicy(max_attempts=2, initial_delay_ms=250)
        assert remote.transport == "http"
        assert remote.api_key == "sekrit"
        assert remote.retry == RetryPolicy()

        assert config.guardrails.enabled is True
        assert config.guardrails.fail_open is True
        assert config.guardrails.plugins["rate_limiter"]["requests_per_minute"] == 10

    def test_defaults(self, tmp_path):
        config = load_gateway_config(_write(tmp_path, "servers: []\n"))
        assert config.approval_mode == "always"
        assert config.approval_timeout == 300
        assert config.requester == "agent"
        assert config.servers == []
        assert config.guardrails.enabled is False
        assert config.guardrails.fail_open is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(GatewayConfigError, match="not found"):
            load_gateway_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(GatewayConfigError, match="Invalid YAML"):
            load_gateway_config(_write(tmp_path, "servers: [unclosed\n"))

    def test_duplicate_keys_rejected(self, tmp_path):
        path = _write(tmp_path, """\
            gateway:
              approval_mode: never
            gateway:
              approval_mode: always
        """)
        with pytest.raises(GatewayConfigError, match="Duplicate YAML key"):
            load_gateway_config(path)

    def test_loads_through_safe_loader(self, tmp_path, monkeypatch):
        seen = []

        def _recording_load(text):
            seen.append(text)
            return safe_yaml_load(text)

        monkeypatch.setattr(config_module, "safe_yaml_load", _recording_load)
        config = load_gateway_config(_write(tmp_path, """\
            gateway:
              approval_mode: never
        """))
        assert config.approval_mode == "never"
        assert len(seen) == 1
        assert "approval_mode: never" in seen[0]

    def test_top_level_must_be_mapping(self):
        with pytest.raises(GatewayConfigError, match="mapping"):
            parse_gateway_config(["not", "a", "mapping"])


# =============================================================================
# GATEWAY SECTION
# =============================================================================

class TestGatewaySection:
    def test_unknown_approval_mode(self):
        with pytest.raises(GatewayConfigError, match="approval_mode"):
            parse_gateway_config({"gateway": {"approval_mode": "sometimes"}})

    @pytest.mark.parametrize("timeout", [29, 3601, -1])
    def test_approval_timeout_bounds(self, timeout):
        with pytest.raises(GatewayConfigError, match="approval_timeout"):
            parse_gateway_config({"gateway": {"approval_timeout": timeout}})

    @pytest.mark.parametrize("timeout", [30, 3600])
    def test_approval_timeout_limits_inclusive(self, timeout):
        config = parse_gateway_config({"gateway": {"approval_timeout": timeout}})
        assert config.approval_timeout == timeout

    def test_non_numeric_timeout(self):
        with pytest.raises(GatewayConfigError, match="expected a number"):
            parse_gateway_config({"gateway": {"approval_timeout": "soon"}})

    def test_single_trusted_tool_string(self):
        config = parse_gateway_config({"gateway": {"trusted_tools": "search"}})
        assert config.trusted_tools == ["search"]


# =============================================================================
# SERVERS SECTION
# =============================================================================

class TestServers:
    def test_missing_name(self):
        with pytest.raises(GatewayConfigError, match=r"servers\[0\].*name"):
            parse_gateway_config({"servers": [{"command": "npx"}]})

    def test_duplicate_name(self):
        with pytest.raises(GatewayConfigError, match="duplicate server name"):
            parse_gateway_config({"servers": [_stdio("a"), _stdio("a")]})

    @pytest.mark.parametrize("name", ["has space", "dots.bad", "slash/no"])
    def test_invalid_name_characters(self, name):
        with pytest.raises(GatewayConfigError, match="invalid characters"):
            parse_gateway_config({"servers": [_stdio(name)]})

    def test_double_underscore_reserved(self):
        with pytest.raises(GatewayConfigError, match="__"):
            parse_gateway_config({"servers": [_stdio("my__server")]})

    def test_single_underscores_and_hyphens_allowed(self):
        config = parse_gateway_config({"servers": [_stdio("my_file-server")]})
        assert config.servers[0].name == "my_file-server"

    def test_stdio_requires_command(self):
        with pytest.raises(GatewayConfigError, match="requires 'command'"):
            parse_gateway_config({"servers": [{"name": "a", "transport": "stdio"}]})

    def test_http_requires_url(self):
        with pytest.raises(GatewayConfigError, match="requires 'url'"):
            parse_gateway_config({"servers": [{"name": "a", "transport": "http"}]})

    def test_http_rejects_non_http_scheme(self):
        with pytest.raises(GatewayConfigError, match="http"):
            parse_gateway_config({"servers": [
                {"name": "a", "transport": "http", "url": "ftp://example.com"},
            ]})

    def test_unknown_transport(self):
        with pytest.raises(GatewayConfigError, match="unsupported transport"):
            parse_gateway_config({"servers": [
                {"name": "a", "transport": "carrier-pigeon", "command": "x"},
            ]})

    def test_transport_aliases(self):
        config = parse_gateway_config({"servers": [
            {"name": "a", "transport": "process", "command": "x"},
            {"name": "b", "transport": "network", "url": "http://localhost:1"},
        ]})
        assert [s.transport for s in config.servers] == ["stdio", "http"]

    def test_negative_retry_rejected(self):
        with pytest.raises(GatewayConfigError, match="retry"):
            parse_gateway_config({"servers": [_stdio(retry_attempts=-1)]})

    def test_disabled_server_kept_with_flag(self):
        config = parse_gateway_config({"servers": [_stdio(enabled=False)]})
        assert config.servers[0].enabled is False

    def test_env_interpolation(self, monkeypatch):
        monkeypatch.setenv("FILES_TOKEN", "t0k")
        config = parse_gateway_config({"servers": [
            _stdio(env={"TOKEN": "${FILES_TOKEN}", "PLAIN": "x"}),
        ]})
        assert config.servers[0].env == {"TOKEN": "t0k", "PLAIN": "x"}

    def test_unset_env_var(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        with pytest.raises(GatewayConfigError, match="NOT_SET_ANYWHERE"):
            parse_gateway_config({"servers": [
                _stdio(env={"TOKEN": "${NOT_SET_ANYWHERE}"}),
            ]})


# =============================================================================
# GUARDRAILS SECTION
# =============================================================================

class TestGuardrails:
    def test_unknown_plugin(self):
        with pytest.raises(GatewayConfigError, match="unknown plugin"):
            parse_gateway_config({"guardrails": {
                "enabled": True, "plugins": {"mind_reader": {}},
            }})

    def test_invalid_pattern_action(self):
        with pytest.raises(GatewayConfigError, match="action_on_match"):
            parse_gateway_config({"guardrails": {
                "enabled": True,
                "plugins": {"pattern_blocker": {"action_on_match": "explode"}},
            }})

    def test_empty_plugin_section_is_allowed(self):
        config = parse_gateway_config({"guardrails": {
            "enabled": True, "plugins": {"pii_redactor": None},
        }})
        assert config.guardrails.plugins == {"pii_redactor": {}}


class TestRetryPolicy:
    def test_delays(self):
        policy = RetryPolicy(max_attempts=3, initial_delay_ms=1000)
        assert policy.delay_for(0) == 0.0
        assert [policy.delay_for(k) for k in (1, 2, 3)] == [1.0, 2.0, 4.0]
