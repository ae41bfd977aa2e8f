"""AgentDeck engine - session management for supervised coding agents."""
from .config import DeckConfig
from .errors import (
    ApprovalCancelledError,
    DeckError,
    DuplicateApprovalError,
    ProviderNotAvailableError,
    RemoteDecisionError,
)
from .models import (
    AgentConfig,
    AgentSession,
    ApprovalDecision,
    ChangeProposal,
    ChangeStatus,
    CommandStatus,
    EditPermissionRequest,
    OutputStream,
    SessionStatus,
)

__all__ = [
    # Session manager (lazy import to avoid circular deps)
    "SessionManager",
    # Config
    "DeckConfig",
    # Models
    "AgentConfig",
    "AgentSession",
    "ApprovalDecision",
    "ChangeProposal",
    "ChangeStatus",
    "CommandStatus",
    "EditPermissionRequest",
    "OutputStream",
    "SessionStatus",
    # Errors
    "ApprovalCancelledError",
    "DeckError",
    "DuplicateApprovalError",
    "ProviderNotAvailableError",
    "RemoteDecisionError",
]


def __getattr__(name: str):
    if name == "SessionManager":
        from .session_manager import SessionManager
        return SessionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
