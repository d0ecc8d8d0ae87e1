"""PII redactor: swaps personal data in tool arguments for numbered
placeholders such as ``[EMAIL_1]`` and optionally puts the originals
back into the tool result.

Detection is regex based.  Values on the allowlist, and emails whose
domain is allowlisted, are left alone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from ..context import GuardrailContext, GuardrailPhase, GuardrailResult
from .base import GuardrailPlugin

logger = logging.getLogger("toolgate.guardrails.pii_redactor")

_BUILTIN_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(
        r"(?<!\w)(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b"
    ),
    "ssn": re.compile(r"\b[0-9]{3}-[0-9]{2}-[0-9]{4}\b"),
    "api_key": re.compile(
        r"\b(?:sk-[A-Za-z0-9]{20,}|gsk_[A-Za-z0-9]{20,}"
        r"|api[_-]?key[_-]?[A-Za-z0-9]{16,})\b",
        re.IGNORECASE,
    ),
    "credit_card": re.compile(
        r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}"
        r"|6(?:011|5[0-9]{2})[0-9]{12})\b"
    ),
    "ip_address": re.compile(
        r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
        r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
    ),
}

# Checked in this order; an earlier type wins an overlapping match.
_DETECTOR_FLAGS = (
    ("email", "detect_emails", True),
    ("api_key", "detect_api_keys", True),
    ("credit_card", "detect_credit_cards", True),
    ("ssn", "detect_ssn", True),
    ("phone", "detect_phones", True),
    ("ip_address", "detect_ip_addresses", False),
)

_LABELS = {
    "email": "EMAIL",
    "phone": "PHONE",
    "ssn": "SSN",
    "api_key": "API_KEY",
    "credit_card": "CARD",
    "ip_address": "IP",
}


@dataclass
class PIIDetection:
    pii_type: str
    value: str
    start: int
    end: int
    label: str


class PIIDetector:
    """Finds PII spans in text."""

    def __init__(
        self,
        enabled_types: list[str],
        custom_patterns: list[dict[str, Any]] | None = None,
        allowlist: list[str] | None = None,
        allowlist_domains: list[str] | None = None,
    ) -> None:
        self._patterns = [(t, _BUILTIN_PATTERNS[t]) for t in enabled_types]
        self._allowlist = {a.lower() for a in allowlist or []}
        self._allowlist_domains = {d.lower() for d in allowlist_domains or []}
        self._custom: list[tuple[str, re.Pattern]] = []
        for custom in custom_patterns or []:
            pattern = custom.get("pattern")
            if not pattern:
                continue
            try:
                regex = re.compile(str(pattern))
            except re.error as exc:
                logger.warning(
                    "Skipping invalid custom PII pattern %r: %s", pattern, exc,
                )
                continue
            label = str(custom.get("placeholder") or "REDACTED").strip("[]")
            self._custom.append((label, regex))

    def detect(self, text: str) -> list[PIIDetection]:
        found: list[PIIDetection] = []
        for pii_type, regex in self._patterns:
            for m in regex.finditer(text):
                if self._is_allowlisted(m.group(0), pii_type):
                    continue
                found.append(PIIDetection(
                    pii_type, m.group(0), m.start(), m.end(), _LABELS[pii_type],
                ))
        for label, regex in self._custom:
            for m in regex.finditer(text):
                if not m.group(0) or m.group(0).lower() in self._allowlist:
                    continue
                found.append(PIIDetection(
                    "custom", m.group(0), m.start(), m.end(), label,
                ))

        # keep the first detection claiming each span
        accepted: list[PIIDetection] = []
        for det in found:
            if any(det.start < a.end and a.start < det.end for a in accepted):
                continue
            accepted.append(det)
        return sorted(accepted, key=lambda d: d.start)

    def _is_allowlisted(self, value: str, pii_type: str) -> bool:
        lowered = value.lower()
        if lowered in self._allowlist:
            return True
        if pii_type == "email":
            domain = lowered.rpartition("@")[2]
            return domain in self._allowlist_domains
        return False


class Pseudonymizer:
    """Replaces detections with numbered placeholders.

    One instance numbers a whole call: the same value always gets the
    same placeholder, and counters run across every string it sees.
    """

    def __init__(self) -> None:
        self.mappings: dict[str, str] = {}
        self._by_value: dict[tuple[str, str], str] = {}
        self._counters: dict[str, int] = {}

    def pseudonymize(self, text: str, detections: list[PIIDetection]) -> str:
        parts: list[str] = []
        cursor = 0
        for det in detections:
            parts.append(text[cursor:det.start])
            parts.append(self._placeholder(det))
            cursor = det.end
        parts.append(text[cursor:])
        return "".join(parts)

    def _placeholder(self, det: PIIDetection) -> str:
        key = (det.label, det.value)
        existing = self._by_value.get(key)
        if existing is not None:
            return existing
        count = self._counters.get(det.label, 0) + 1
        self._counters[det.label] = count
        placeholder = f"[{det.label}_{count}]"
        self._by_value[key] = placeholder
        self.mappings[placeholder] = det.value
        return placeholder


def restore(text: str, mappings: dict[str, str]) -> str:
    for placeholder, original in mappings.items():
        text = text.replace(placeholder, original)
    return text


class PIIRedactorPlugin(GuardrailPlugin):
    name = "pii_redactor"
    phases = frozenset({
        GuardrailPhase.PRE_TOOL_INPUT, GuardrailPhase.POST_TOOL_OUTPUT,
    })
    default_priority = 25

    def __init__(self) -> None:
        super().__init__()
        self.detector = PIIDetector([])
        self.restore_on_response = False
        self.log_detections = True

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        enabled_types = [
            pii_type for pii_type, key, default in _DETECTOR_FLAGS
            if config.get(key, default)
        ]
        custom = config.get("custom_patterns") or []
        if not isinstance(custom, list):
            raise ValueError("custom_patterns must be a list")
        self.detector = PIIDetector(
            enabled_types,
            custom_patterns=[c for c in custom if isinstance(c, dict)],
            allowlist=[str(a) for a in config.get("allowlist") or []],
            allowlist_domains=[
                str(d) for d in config.get("allowlist_domains") or []
            ],
        )
        self.restore_on_response = bool(config.get("restore_on_response", False))
        self.log_detections = bool(config.get("log_detections", True))

    async def execute(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        if phase is GuardrailPhase.PRE_TOOL_INPUT:
            return self._redact(phase, context)
        if phase is GuardrailPhase.POST_TOOL_OUTPUT and self.restore_on_response:
            return self._restore(phase, context)
        return self.allow(context)

    def _redact(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        if not context.tool_args:
            return self.allow(context)

        pseudonymizer = Pseudonymizer()
        types: list[str] = []

        def _walk(value: Any) -> Any:
            if isinstance(value, str):
                detections = self.detector.detect(value)
                if not detections:
                    return value
                types.extend(d.pii_type for d in detections)
                return pseudonymizer.pseudonymize(value, detections)
            if isinstance(value, list):
                return [_walk(v) for v in value]
            if isinstance(value, dict):
                return {k: _walk(v) for k, v in value.items()}
            return value

        redacted = _walk(context.tool_args)
        if not types:
            return self.allow(context)

        distinct = sorted(set(types))
        if self.log_detections:
            logger.info(
                "PII detected in tool_args for request %s: %s (%d items)",
                context.request_id, ", ".join(distinct), len(types),
            )

        context.metadata["pii_mappings"] = dict(pseudonymizer.mappings)
        # originals are not recorded on the modification
        self.add_modification(
            context, phase, "tool_args",
            f"Redacted {len(types)} PII items: {', '.join(distinct)}",
        )
        context.tool_args = redacted
        return self.modify(context)

    def _restore(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        mappings = context.metadata.get("pii_mappings")
        if not mappings or context.tool_result is None:
            return self.allow(context)

        changed = False

        def _walk(value: Any) -> Any:
            nonlocal changed
            if isinstance(value, str):
                restored = restore(value, mappings)
                if restored != value:
                    changed = True
                return restored
            if isinstance(value, list):
                return [_walk(v) for v in value]
            if isinstance(value, dict):
                return {k: _walk(v) for k, v in value.items()}
            return value

        restored = _walk(context.tool_result)
        if not changed:
            return self.allow(context)

        self.add_modification(
            context, phase, "tool_result",
            f"Restored {len(mappings)} PII placeholders",
        )
        context.tool_result = restored
        return self.modify(context)
