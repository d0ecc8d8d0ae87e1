"""Rate limiter: caps tool calls per minute and per hour.

History is kept per key: ``"global"``, or the requester identity when
``per_requester`` is set.  Each limit gets ``burst_allowance`` extra
calls before blocking.  A warning violation is recorded once the
per-minute count reaches 80% of its limit.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from ..context import GuardrailContext, GuardrailPhase, GuardrailResult
from .base import GuardrailPlugin

_MINUTE = 60.0
_HOUR = 60.0 * 60.0

_WARN_RATIO = 0.8


class RateLimiterPlugin(GuardrailPlugin):
    name = "rate_limiter"
    phases = frozenset({GuardrailPhase.PRE_TOOL_INPUT})
    default_priority = 10

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._clock = clock
        self.requests_per_minute = 60
        self.requests_per_hour = 1000
        self.per_requester = False
        self.burst_allowance = 5
        self._history: dict[str, list[float]] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self.requests_per_minute = int(config.get("requests_per_minute", 60))
        self.requests_per_hour = int(config.get("requests_per_hour", 1000))
        self.per_requester = bool(
            config.get("per_requester", config.get("per_provider", False)),
        )
        self.burst_allowance = int(config.get("burst_allowance", 5))
        if self.requests_per_minute < 1 or self.requests_per_hour < 1:
            raise ValueError("rate limits must be at least 1")
        if self.burst_allowance < 0:
            raise ValueError("burst_allowance must be >= 0")

    async def execute(
        self, phase: GuardrailPhase, context: GuardrailContext,
    ) -> GuardrailResult:
        if phase is not GuardrailPhase.PRE_TOOL_INPUT:
            return self.allow(context)

        key = context.requester if self.per_requester else "global"
        now = self._clock()

        history = [t for t in self._history.get(key, []) if t > now - _HOUR]
        if history:
            self._history[key] = history
        else:
            # drop idle keys so per-requester mode does not grow unbounded
            self._history.pop(key, None)

        last_minute = sum(1 for t in history if t > now - _MINUTE)
        last_hour = len(history)

        if last_minute >= self.requests_per_minute + self.burst_allowance:
            self.add_violation(
                context, phase, "requests_per_minute", "error",
                f"Rate limit exceeded: {last_minute} requests in the last "
                f"minute (limit: {self.requests_per_minute})",
                {"requests_last_minute": last_minute,
                 "limit": self.requests_per_minute},
            )
            return self.block(
                context,
                f"Rate limit exceeded: {last_minute}/"
                f"{self.requests_per_minute} requests per minute",
            )

        if last_hour >= self.requests_per_hour + self.burst_allowance:
            self.add_violation(
                context, phase, "requests_per_hour", "error",
                f"Rate limit exceeded: {last_hour} requests in the last "
                f"hour (limit: {self.requests_per_hour})",
                {"requests_last_hour": last_hour,
                 "limit": self.requests_per_hour},
            )
            return self.block(
                context,
                f"Rate limit exceeded: {last_hour}/"
                f"{self.requests_per_hour} requests per hour",
            )

        if last_minute >= self.requests_per_minute * _WARN_RATIO:
            self.add_violation(
                context, phase, "requests_per_minute_warning", "warning",
                f"Approaching rate limit: {last_minute}/"
                f"{self.requests_per_minute} requests per minute",
                {"requests_last_minute": last_minute,
                 "limit": self.requests_per_minute},
            )

        history.append(now)
        self._history[key] = history
        return self.allow(context)

    def request_counts(self, key: str = "global") -> dict[str, int]:
        now = self._clock()
        history = self._history.get(key, [])
        return {
            "last_minute": sum(1 for t in history if t > now - _MINUTE),
            "last_hour": sum(1 for t in history if t > now - _HOUR),
        }

    def reset(self) -> None:
        self._history.clear()

    async def shutdown(self) -> None:
        await super().shutdown()
        self._history.clear()
