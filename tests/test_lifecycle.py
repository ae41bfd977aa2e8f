from __future__ import annotations

import pytest

from agentdeck.engine.lifecycle import (
    validate_change_transition,
    validate_session_transition,
)
from agentdeck.engine.models import ChangeStatus, SessionStatus


@pytest.mark.parametrize(
    "current,target",
    [
        (ChangeStatus.PENDING, ChangeStatus.PROCESSING),
        (ChangeStatus.PENDING, ChangeStatus.ACCEPTED),
        (ChangeStatus.PENDING, ChangeStatus.DECLINED),
        (ChangeStatus.PROCESSING, ChangeStatus.PENDING),
        (ChangeStatus.PROCESSING, ChangeStatus.ACCEPTED),
        (ChangeStatus.PROCESSING, ChangeStatus.DECLINED),
    ],
)
def test_allowed_change_transitions(current, target):
    validate_change_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (ChangeStatus.ACCEPTED, ChangeStatus.PENDING),
        (ChangeStatus.ACCEPTED, ChangeStatus.DECLINED),
        (ChangeStatus.DECLINED, ChangeStatus.ACCEPTED),
        (ChangeStatus.PENDING, ChangeStatus.PENDING),
    ],
)
def test_rejected_change_transitions(current, target):
    with pytest.raises(ValueError, match="Invalid state transition"):
        validate_change_transition(current, target)


def test_stopped_session_cannot_run_again():
    validate_session_transition(SessionStatus.RUNNING, SessionStatus.STOPPED)
    with pytest.raises(ValueError):
        validate_session_transition(SessionStatus.STOPPED, SessionStatus.RUNNING)
    with pytest.raises(ValueError):
        validate_session_transition(SessionStatus.STOPPED, SessionStatus.STOPPED)
