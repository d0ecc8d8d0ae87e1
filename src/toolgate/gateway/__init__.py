"""Toolgate gateway: MCP proxy with approvals, trust and guardrails."""


def check_mcp_available() -> None:
    """Exit with a clear message if the ``mcp`` package is missing."""
    import sys

    try:
        import mcp  # noqa: F401
    except ImportError:
        print(
            "Error: The gateway requires the 'mcp' package.\n"
            "Install with: pip install mcp",
            file=sys.stderr,
        )
        sys.exit(1)


def main() -> None:
    """CLI entry point for ``toolgate-gateway``."""
    check_mcp_available()
    from toolgate.gateway.server import run_gateway

    run_gateway()
