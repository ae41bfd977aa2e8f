"""Typed events flowing through the server.

Two channels, each with its own base class:

* ProviderEvent: execution provider -> session manager (via EventBus).
* ObserverEvent: session manager -> dashboard observers (via
  BroadcastFanout).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentdeck.engine.models import EditPermissionRequest, OutputStream, now_ms


@dataclass
class ProviderEvent:
    """Base event emitted by an execution provider."""
    event_type: str = ""
    agent_id: str = ""
    session_id: str = ""


@dataclass
class AgentOutput(ProviderEvent):
    event_type: str = "output"
    text: str = ""
    stream: OutputStream = OutputStream.STDOUT


@dataclass
class EditPermissionRequested(ProviderEvent):
    event_type: str = "edit_permission_requested"
    request: EditPermissionRequest | None = None


@dataclass
class AgentExited(ProviderEvent):
    event_type: str = "exit"
    code: int | None = None


@dataclass
class ObserverEvent:
    """Base event delivered to dashboard observers."""
    event_type: str = ""
    timestamp: int = field(default_factory=now_ms)


@dataclass
class SessionStarted(ObserverEvent):
    event_type: str = "session_started"
    session: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStopped(ObserverEvent):
    event_type: str = "session_stopped"
    agent_id: str = ""
    session_id: str = ""
    exit_code: int | None = None


@dataclass
class SessionDeleted(ObserverEvent):
    event_type: str = "session_deleted"
    agent_id: str = ""
    session_id: str = ""


@dataclass
class SessionOutput(ObserverEvent):
    event_type: str = "session_output"
    agent_id: str = ""
    session_id: str = ""
    output: str = ""
    stream: str = OutputStream.STDOUT.value


@dataclass
class NewChangeProposal(ObserverEvent):
    event_type: str = "new_change_proposal"
    change: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChangeStatusChanged(ObserverEvent):
    event_type: str = "change_status_changed"
    change_id: str = ""
    status: str = ""
    change: dict[str, Any] = field(default_factory=dict)


@dataclass
class EditPermissionPending(ObserverEvent):
    event_type: str = "edit_permission_requested"
    request: dict[str, Any] = field(default_factory=dict)


_CAMEL_KEYS = {
    "agent_id": "agentId",
    "session_id": "sessionId",
    "exit_code": "exitCode",
    "change_id": "changeId",
}


def event_to_dict(event: ObserverEvent) -> dict[str, Any]:
    """Convert an observer event to the JSON payload sent to browsers."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None or f == "event_type":
            continue
        d[_CAMEL_KEYS.get(f, f)] = val
    return {"event": event.event_type, "data": d}
