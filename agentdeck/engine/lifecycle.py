"""Session and change-proposal state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Session:

    (none) ──> RUNNING ──> STOPPED

    Continuing a session creates a new RUNNING session that reuses the
    logical session id; a STOPPED session never runs again.

Change proposal:

    PENDING ──> PROCESSING ──┬──> ACCEPTED
       │            │        │
       │            │        └──> DECLINED
       │            │
       │            └──> PENDING  (decision could not be delivered)
       │
       └──> ACCEPTED | DECLINED
"""
from __future__ import annotations

from .models import ChangeStatus, SessionStatus

VALID_SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.RUNNING: {SessionStatus.STOPPED},
    SessionStatus.STOPPED: set(),
}

VALID_CHANGE_TRANSITIONS: dict[ChangeStatus, set[ChangeStatus]] = {
    ChangeStatus.PENDING: {
        ChangeStatus.PROCESSING,
        ChangeStatus.ACCEPTED,
        ChangeStatus.DECLINED,
    },
    ChangeStatus.PROCESSING: {
        ChangeStatus.PENDING,
        ChangeStatus.ACCEPTED,
        ChangeStatus.DECLINED,
    },
    ChangeStatus.ACCEPTED: set(),
    ChangeStatus.DECLINED: set(),
}


def _check(current, target, table) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_session_transition(
    current: SessionStatus, target: SessionStatus,
) -> None:
    """Validate a session transition. Raises ValueError if invalid."""
    _check(current, target, VALID_SESSION_TRANSITIONS)


def validate_change_transition(
    current: ChangeStatus, target: ChangeStatus,
) -> None:
    """Validate a change transition. Raises ValueError if invalid."""
    _check(current, target, VALID_CHANGE_TRANSITIONS)
