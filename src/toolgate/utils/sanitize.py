"""Redaction of secrets from tool arguments and results before logging.

Tool arguments routinely carry credentials (API keys, bearer tokens,
passwords).  Anything the gateway writes to a log about a call goes
through :func:`redact_sensitive` first.
"""

from __future__ import annotations

import re
from typing import Any

_SENSITIVE_KEYS = frozenset({
    "password",
    "apikey",
    "api_key",
    "token",
    "secret",
    "auth",
    "authorization",
    "cookie",
    "session",
    "private_key",
    "privatekey",
    "client_secret",
    "clientsecret",
})

_SENSITIVE_KEY_PATTERNS = (
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"key$", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
    re.compile(r"cookie", re.IGNORECASE),
    re.compile(r"session", re.IGNORECASE),
)

# Long unbroken base64-ish strings are treated as opaque credentials
_OPAQUE_VALUE = re.compile(r"^[A-Za-z0-9+/=]{21,}$")

_MAX_DEPTH = 5


def is_sensitive_key(key: str) -> bool:
    """Return True if a mapping key names a credential-like field."""
    if key.lower() in _SENSITIVE_KEYS:
        return True
    return any(p.search(key) for p in _SENSITIVE_KEY_PATTERNS)


def redact_sensitive(value: Any, _depth: int = 0) -> Any:
    """Return a copy of *value* with credential-like content masked.

    Mapping values under sensitive keys become ``[REDACTED:<n>chars]``
    (strings) or ``[REDACTED]`` (anything else).  Nesting deeper than
    five levels is collapsed to a marker string.
    """
    if _depth >= _MAX_DEPTH:
        return "[Max depth exceeded]"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if _OPAQUE_VALUE.match(value):
            return f"[REDACTED:{len(value)}chars]"
        return value

    if isinstance(value, (list, tuple)):
        return [redact_sensitive(item, _depth + 1) for item in value]

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            key = str(key)
            if is_sensitive_key(key):
                if isinstance(item, str) and item:
                    sanitized[key] = f"[REDACTED:{len(item)}chars]"
                else:
                    sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = redact_sensitive(item, _depth + 1)
        return sanitized

    return repr(value)
