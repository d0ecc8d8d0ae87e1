"""Argument validation against a tool's JSON Schema.

The dispatcher only depends on the :class:`ArgumentValidator` shape,
``validate(schema, value) -> list[str]``; :class:`JsonSchemaValidator`
is the ``jsonschema``-backed implementation used by default.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from jsonschema import SchemaError
from jsonschema.validators import validator_for

logger = logging.getLogger("toolgate.gateway.validation")


class ArgumentValidator(Protocol):
    def validate(self, schema: dict[str, Any], value: Any) -> list[str]:
        """Return human-readable errors; empty when *value* is valid."""
        ...


class JsonSchemaValidator:
    """Validates with the draft declared by the schema (``$schema``),
    falling back to the latest draft ``jsonschema`` supports.

    Compiled validators are cached per schema.  A schema that is itself
    invalid is logged and treated as accepting everything, since the
    downstream server remains the final authority on its own input.
    """

    def __init__(self) -> None:
        self._cache: dict[str, Any] = {}

    def validate(self, schema: dict[str, Any], value: Any) -> list[str]:
        if not schema:
            return []
        validator = self._compile(schema)
        if validator is None:
            return []
        errors = sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.path])
        return [_format_error(e) for e in errors]

    def _compile(self, schema: dict[str, Any]) -> Any:
        key = json.dumps(schema, sort_keys=True, default=str)
        if key in self._cache:
            return self._cache[key]
        cls = validator_for(schema)
        try:
            cls.check_schema(schema)
            validator = cls(schema)
        except SchemaError as e:
            logger.warning("Skipping validation, invalid tool schema: %s", e.message)
            validator = None
        self._cache[key] = validator
        return validator


def _format_error(error: Any) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    return f"{'/' + path if path else 'root'}: {error.message}"
