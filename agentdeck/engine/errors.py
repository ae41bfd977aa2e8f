"""Exception hierarchy for the session engine.

Routine races (unknown id, already stopped, already resolved) are
reported as CommandStatus values by the manager. These exceptions
cover the cases where a caller has to unwind.
"""
from __future__ import annotations


class DeckError(Exception):
    """Base exception for all agentdeck errors."""


class DuplicateApprovalError(DeckError):
    """An approval with the same token is already outstanding."""
    def __init__(self, tool_use_id: str):
        self.tool_use_id = tool_use_id
        super().__init__(f"Edit approval already pending: {tool_use_id}")


class ApprovalCancelledError(DeckError):
    """A pending approval was failed because its session went away."""
    def __init__(self, tool_use_id: str, reason: str = "stopped"):
        self.tool_use_id = tool_use_id
        self.reason = reason
        super().__init__(
            f"Edit approval {tool_use_id} cancelled: {reason}"
        )


class RemoteDecisionError(DeckError):
    """The agent could not be told about an accept/decline decision."""
    def __init__(self, change_id: str, reason: str):
        self.change_id = change_id
        self.reason = reason
        super().__init__(
            f"Could not deliver decision for change {change_id}: {reason}"
        )


class ProviderNotAvailableError(DeckError):
    """The configured execution strategy cannot be used."""
    def __init__(self, strategy: str, reason: str = ""):
        self.strategy = strategy
        self.reason = reason
        msg = f"Execution strategy not available: {strategy}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
