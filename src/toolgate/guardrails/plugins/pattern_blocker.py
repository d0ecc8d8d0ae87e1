"""Pattern blocker: rejects, flags, or scrubs tool arguments that match
configured literal strings or regular expressions.

Arguments are matched in their JSON-serialised form, so patterns see
keys and values alike.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from ..context import GuardrailContext, GuardrailPhase, GuardrailResult
from .base import GuardrailPlugin

logger = logging.getLogger("toolgate.guardrails.pattern_blocker")

REDACTED = "[REDACTED]"


@dataclass
class PatternMatch:
    pattern: str
    is_regex: bool
    matched_text: str
    position: int


class PatternBlockerPlugin(GuardrailPlugin):
    name = "pattern_blocker"
    phases = frozenset({GuardrailPhase.PRE_TOOL_INPUT})
    default_priority = 30

    def __init__(self) -> None:
        super().__init__()
        self.blocked_patterns: list[str] = []
        self.blocked_regex: list[re.Pattern] = []
        self.case_sensitive = False
        self.action_on_match = "block"

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self.blocked_patterns = [str(p) for p in config.get("blocked_patterns", [])]
        self.case_sensitive = bool(config.get("case_sensitive", False))
        self.action_on_match = str(config.get("action_on_match", "block"))
        if self.action_on_match not in ("block", "warn", "redact"):
            raise ValueError(
                f"invalid action_on_match '{self.action_on_match}'"
            )

        flags = 0 if self.case_sensitive else re.IGNORECASE
        self.blocked_regex = []
        for pattern in config.get("blocked_patterns_regex", []):
            try:
                self.blocked_regex.append(re.compile(str(pattern), flags))
            except re.error as exc:
                logger.warning("Skipping invalid pattern %r: %s", pattern, exc)

    async def execute(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        if phase is not GuardrailPhase.PRE_TOOL_INPUT:
            return self.allow(context)

        text = json.dumps(context.tool_args or {}, default=str)
        matches = self.find_matches(text)
        if not matches:
            return self.allow(context)

        summary = ", ".join(dict.fromkeys(m.pattern for m in matches))
        details = {
            "matches": [
                {"pattern": m.pattern, "position": m.position} for m in matches
            ],
        }

        if self.action_on_match == "block":
            self.add_violation(
                context, phase, "blocked_pattern", "error",
                f"Blocked patterns found: {summary}", details,
            )
            return self.block(context, f"Blocked pattern detected: {summary}")

        if self.action_on_match == "warn":
            self.add_violation(
                context, phase, "blocked_pattern_warning", "warning",
                f"Suspicious patterns found: {summary}", details,
            )
            return self.allow(context)

        redacted = self._redact(context.tool_args or {})
        self.add_modification(
            context, phase, "tool_args",
            f"Redacted {len(matches)} blocked patterns",
        )
        context.tool_args = redacted
        return self.modify(context)

    def find_matches(self, text: str) -> list[PatternMatch]:
        matches: list[PatternMatch] = []
        haystack = text if self.case_sensitive else text.lower()

        for pattern in self.blocked_patterns:
            if not pattern:
                continue
            needle = pattern if self.case_sensitive else pattern.lower()
            position = haystack.find(needle)
            while position != -1:
                matches.append(PatternMatch(
                    pattern=pattern,
                    is_regex=False,
                    matched_text=text[position:position + len(pattern)],
                    position=position,
                ))
                position = haystack.find(needle, position + 1)

        for regex in self.blocked_regex:
            for m in regex.finditer(text):
                matches.append(PatternMatch(
                    pattern=regex.pattern,
                    is_regex=True,
                    matched_text=m.group(0),
                    position=m.start(),
                ))

        return matches

    def _redact(self, value: Any) -> Any:
        # Keys and string leaves are rewritten; the structure survives
        if isinstance(value, str):
            return self._redact_text(value)
        if isinstance(value, list):
            return [self._redact(v) for v in value]
        if isinstance(value, dict):
            return {
                (self._redact_text(k) if isinstance(k, str) else k): self._redact(v)
                for k, v in value.items()
            }
        return value

    def _redact_text(self, text: str) -> str:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        for pattern in self.blocked_patterns:
            if pattern:
                text = re.sub(re.escape(pattern), REDACTED, text, flags=flags)
        for regex in self.blocked_regex:
            text = regex.sub(REDACTED, text)
        return text
