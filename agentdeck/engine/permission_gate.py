"""Pending edit approvals keyed by tool-use token.

Each file-mutating tool call registers a single-resolution future here
and blocks on it. A human resolves it through the dashboard, or the
deadline fires and the call is denied. Every entry is resolved at most
once: the first of (resolve, deadline, session teardown) wins and
removes the entry.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from .errors import ApprovalCancelledError, DuplicateApprovalError
from .models import ApprovalDecision, CommandStatus

logger = logging.getLogger(__name__)

# How many expired tokens to remember so a late resolve reports "timeout"
# instead of "not_found".
_EXPIRED_MEMORY = 256


@dataclass
class _PendingApproval:
    agent_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None


class EditPermissionGate:
    """Registry of outstanding edit approvals for one provider."""

    def __init__(self, default_timeout: float = 300.0) -> None:
        self._default_timeout = default_timeout
        self._pending: dict[str, _PendingApproval] = {}
        self._expired: deque[str] = deque(maxlen=_EXPIRED_MEMORY)

    def request(
        self,
        tool_use_id: str,
        agent_id: str,
        timeout: float | None = None,
    ) -> asyncio.Future:
        """Register a pending approval and return its future.

        The future resolves to an ApprovalDecision, or raises
        ApprovalCancelledError when the owning agent is stopped.
        """
        if tool_use_id in self._pending:
            raise DuplicateApprovalError(tool_use_id)
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        wait = self._default_timeout if timeout is None else timeout
        timer = None
        if wait and wait > 0:
            timer = loop.call_later(wait, self._expire, tool_use_id)
        self._pending[tool_use_id] = _PendingApproval(agent_id, future, timer)
        logger.info(
            "Edit approval pending tool_use=%s agent=%s timeout=%s",
            tool_use_id, agent_id[:12], wait,
        )
        return future

    async def wait(
        self,
        tool_use_id: str,
        agent_id: str,
        timeout: float | None = None,
    ) -> ApprovalDecision:
        """Register and block until the approval is settled."""
        future = self.request(tool_use_id, agent_id, timeout)
        try:
            return await future
        except asyncio.CancelledError:
            self._discard(tool_use_id)
            raise

    def resolve(
        self,
        tool_use_id: str,
        approved: bool,
        agent_id: str | None = None,
    ) -> CommandStatus:
        """Deliver a human decision. At most one call per token succeeds."""
        entry = self._pending.get(tool_use_id)
        if entry is None:
            if tool_use_id in self._expired:
                logger.info("Edit approval %s already timed out", tool_use_id)
                return CommandStatus.TIMEOUT
            logger.warning("Edit approval %s not found (already resolved?)", tool_use_id)
            return CommandStatus.NOT_FOUND
        if agent_id is not None and entry.agent_id != agent_id:
            logger.warning(
                "Edit approval %s belongs to agent %s, not %s",
                tool_use_id, entry.agent_id[:12], agent_id[:12],
            )
            return CommandStatus.NOT_FOUND
        self._discard(tool_use_id)
        decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED
        if not entry.future.done():
            entry.future.set_result(decision)
        logger.info("Edit approval %s resolved: %s", tool_use_id, decision.value)
        return CommandStatus.OK

    def reject_agent(self, agent_id: str, reason: str = "stopped") -> int:
        """Fail every pending approval of *agent_id*. Returns the count."""
        tokens = [t for t, e in self._pending.items() if e.agent_id == agent_id]
        for token in tokens:
            entry = self._discard(token)
            if entry is not None and not entry.future.done():
                entry.future.set_exception(ApprovalCancelledError(token, reason))
                # Nobody may be awaiting it anymore; mark retrieved.
                entry.future.exception()
        if tokens:
            logger.info(
                "Rejected %d pending edit approval(s) for agent %s: %s",
                len(tokens), agent_id[:12], reason,
            )
        return len(tokens)

    def reject_all(self, reason: str = "shutdown") -> int:
        agents = {e.agent_id for e in self._pending.values()}
        return sum(self.reject_agent(a, reason) for a in agents)

    def pending(self, agent_id: str | None = None) -> list[str]:
        return [
            t for t, e in self._pending.items()
            if agent_id is None or e.agent_id == agent_id
        ]

    def is_pending(self, tool_use_id: str) -> bool:
        return tool_use_id in self._pending

    def _expire(self, tool_use_id: str) -> None:
        entry = self._pending.pop(tool_use_id, None)
        if entry is None:
            return
        self._expired.append(tool_use_id)
        if not entry.future.done():
            entry.future.set_result(ApprovalDecision.TIMED_OUT)
        logger.warning(
            "Edit approval %s timed out for agent %s; denying",
            tool_use_id, entry.agent_id[:12],
        )

    def _discard(self, tool_use_id: str) -> _PendingApproval | None:
        entry = self._pending.pop(tool_use_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry
