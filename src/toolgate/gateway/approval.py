"""Approval store: time-bound approval requests and session trust.

A tool call that needs human sign-off is parked here as an
:class:`ApprovalRequest` with a fixed deadline.  An operator approves or
denies it; once approved, the (requester, server, tool) triple is
trusted for the rest of the session.

Expiry is evaluated lazily on every read and command, and also by an
optional background sweeper.  Both apply the same test
(``now >= expires_at`` while still pending), so they always agree.
A resolved request is never re-evaluated: approval before the deadline
is permanent.

Not persistent: requests and session trust are lost on restart.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from toolgate.utils.sanitize import redact_sensitive

logger = logging.getLogger("toolgate.gateway.approval")

# Default approval timeout (seconds)
_DEFAULT_APPROVAL_TIMEOUT = 300.0

# How long resolved or expired requests are kept before purge (seconds)
_DEFAULT_RETENTION = 3600.0

Clock = Callable[[], float]


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class ApprovalRequest:
    """A tool call held pending human approval.

    ``approval_id``, ``created_at`` and ``expires_at`` never change after
    creation.  ``status`` leaves ``pending`` exactly once.
    """
    approval_id: str
    requester: str
    server_name: str
    tool_name: str
    arguments: dict[str, Any]
    created_at: float
    expires_at: float
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: str | None = None
    denied_reason: str | None = None
    resolved_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view with redacted arguments."""
        data: dict[str, Any] = {
            "id": self.approval_id,
            "requester": self.requester,
            "server": self.server_name,
            "tool": self.tool_name,
            "arguments": redact_sensitive(self.arguments),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }
        if self.approved_by is not None:
            data["approved_by"] = self.approved_by
        if self.denied_reason is not None:
            data["denied_reason"] = self.denied_reason
        return data


class ApprovalStore:
    """In-memory approval requests plus session-scoped trust.

    Args:
        timeout: Seconds from creation until a pending request expires.
        retention: Seconds a resolved/expired request is kept before
            :meth:`purge` drops it.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        timeout: float = _DEFAULT_APPROVAL_TIMEOUT,
        retention: float = _DEFAULT_RETENTION,
        clock: Clock = time.time,
    ) -> None:
        self._requests: dict[str, ApprovalRequest] = {}
        self._session_trust: set[tuple[str, str, str]] = set()
        self._timeout = timeout
        self._retention = retention
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None

    @property
    def timeout(self) -> float:
        return self._timeout

    # -- requests ------------------------------------------------------------

    def create(
        self,
        requester: str,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> ApprovalRequest:
        """Create and store a new pending request."""
        now = self._clock()
        request = ApprovalRequest(
            approval_id=str(uuid.uuid4()),
            requester=requester,
            server_name=server_name,
            tool_name=tool_name,
            arguments=dict(arguments),
            created_at=now,
            expires_at=now + self._timeout,
        )
        self._requests[request.approval_id] = request
        logger.info(
            "Created approval request %s for %s to call %s:%s",
            request.approval_id, requester, server_name, tool_name,
        )
        logger.debug(
            "Approval request %s arguments: %s",
            request.approval_id, redact_sensitive(arguments),
        )
        return request

    def get(self, approval_id: str) -> ApprovalRequest | None:
        """Return the request, expiring it first if its deadline passed."""
        request = self._requests.get(approval_id)
        if request is not None:
            self._expire_if_due(request, self._clock())
        return request

    def get_status(self, approval_id: str) -> ApprovalStatus | None:
        request = self.get(approval_id)
        return request.status if request is not None else None

    def approve(self, approval_id: str, approved_by: str = "user") -> bool:
        """Approve a pending, unexpired request.

        Also grants session trust for its (requester, server, tool).
        Returns ``False`` for unknown, already resolved, or expired
        requests.
        """
        request = self._requests.get(approval_id)
        if request is None:
            logger.warning("Approval request %s not found", approval_id)
            return False

        now = self._clock()
        if self._expire_if_due(request, now):
            logger.warning("Approval request %s has expired", approval_id)
            return False
        if request.status is not ApprovalStatus.PENDING:
            logger.warning(
                "Approval request %s is not pending (status: %s)",
                approval_id, request.status.value,
            )
            return False

        request.status = ApprovalStatus.APPROVED
        request.approved_by = approved_by
        request.resolved_at = now
        self.mark_approved(
            request.requester, request.server_name, request.tool_name,
        )
        logger.info(
            "Approval request %s approved by %s", approval_id, approved_by,
        )
        return True

    def deny(self, approval_id: str, reason: str | None = None) -> bool:
        """Deny a pending request. Returns ``False`` if not pending."""
        request = self._requests.get(approval_id)
        if request is None:
            logger.warning("Approval request %s not found", approval_id)
            return False

        now = self._clock()
        self._expire_if_due(request, now)
        if request.status is not ApprovalStatus.PENDING:
            logger.warning(
                "Approval request %s is not pending (status: %s)",
                approval_id, request.status.value,
            )
            return False

        request.status = ApprovalStatus.DENIED
        request.denied_reason = reason
        request.resolved_at = now
        if reason:
            logger.info("Approval request %s denied: %s", approval_id, reason)
        else:
            logger.info("Approval request %s denied", approval_id)
        return True

    def list_pending(self) -> list[ApprovalRequest]:
        self.sweep_expired()
        return [
            r for r in self._requests.values()
            if r.status is ApprovalStatus.PENDING
        ]

    def list_all(self) -> list[ApprovalRequest]:
        self.sweep_expired()
        return list(self._requests.values())

    def list_by_requester(self, requester: str) -> list[ApprovalRequest]:
        self.sweep_expired()
        return [r for r in self._requests.values() if r.requester == requester]

    def get_stats(self) -> dict[str, int]:
        self.sweep_expired()
        stats = {"total": len(self._requests)}
        for status in ApprovalStatus:
            stats[status.value] = sum(
                1 for r in self._requests.values() if r.status is status
            )
        return stats

    # -- expiry --------------------------------------------------------------

    def _expire_if_due(self, request: ApprovalRequest, now: float) -> bool:
        """Promote a pending request past its deadline. True if promoted."""
        if request.status is ApprovalStatus.PENDING and now >= request.expires_at:
            request.status = ApprovalStatus.EXPIRED
            request.resolved_at = request.expires_at
            logger.info("Approval request %s has expired", request.approval_id)
            return True
        return False

    def sweep_expired(self) -> int:
        """Expire every pending request past its deadline. Returns count."""
        now = self._clock()
        count = 0
        for request in self._requests.values():
            if self._expire_if_due(request, now):
                count += 1
        return count

    def purge(self, retention: float | None = None) -> int:
        """Drop requests resolved or expired more than *retention* seconds
        ago. Pending requests are never purged. Returns count removed."""
        keep_for = self._retention if retention is None else retention
        now = self._clock()
        stale = [
            rid for rid, r in self._requests.items()
            if r.status is not ApprovalStatus.PENDING
            and r.resolved_at is not None
            and now - r.resolved_at >= keep_for
        ]
        for rid in stale:
            del self._requests[rid]
        return len(stale)

    async def start_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Start a background task that sweeps and purges periodically."""
        if self._sweep_task is not None:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                expired = self.sweep_expired()
                purged = self.purge()
                if expired or purged:
                    logger.debug(
                        "Approval sweep: %d expired, %d purged",
                        expired, purged,
                    )

        self._sweep_task = asyncio.create_task(_loop())

    async def stop_sweeper(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        await self.stop_sweeper()

    # -- session trust -------------------------------------------------------

    def mark_approved(self, requester: str, server_name: str, tool_name: str) -> None:
        self._session_trust.add((requester, server_name, tool_name))
        logger.info(
            "Tool %s:%s:%s marked as approved for session",
            requester, server_name, tool_name,
        )

    def is_approved(self, requester: str, server_name: str, tool_name: str) -> bool:
        return (requester, server_name, tool_name) in self._session_trust

    def clear_all(self) -> None:
        """Revoke every session trust grant."""
        count = len(self._session_trust)
        self._session_trust.clear()
        logger.info("Cleared %d session approvals", count)

    def session_approvals(self) -> list[str]:
        return sorted(":".join(key) for key in self._session_trust)

    def __len__(self) -> int:
        return len(self._requests)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
