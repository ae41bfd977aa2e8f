"""Core data models for the session engine.

All dataclasses and enums shared by the manager, the execution
providers and the HTTP surface. Wire/disk records use camelCase keys.
"""
from __future__ import annotations

import random
import string
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _rand_suffix(length: int = 7) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def new_agent_id() -> str:
    return f"agent-{now_ms()}-{_rand_suffix()}"


def new_session_id(name: str) -> str:
    slug = "-".join(name.strip().lower().split()) or "agent"
    return f"session-{slug}-{now_ms()}"


def new_change_id() -> str:
    return f"change-{now_ms()}-{_rand_suffix(9)}"


def new_tool_use_id(agent_id: str) -> str:
    return f"{agent_id}:{uuid.uuid4().hex[:12]}"


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    RUNNING = "running"
    STOPPED = "stopped"


class ChangeStatus(str, Enum):
    """Change proposal states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class CommandStatus(str, Enum):
    """Outcome of a command issued against the manager or a provider."""
    OK = "ok"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    TIMEOUT = "timeout"


class OutputStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class ApprovalDecision(str, Enum):
    """How a pending edit approval was settled."""
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @property
    def allowed(self) -> bool:
        return self is ApprovalDecision.APPROVED


@dataclass
class AgentConfig:
    """Everything a provider needs to begin an agent execution."""
    id: str
    session_id: str
    name: str
    role: str
    work_dir: str
    patterns: list[str] = field(default_factory=list)


@dataclass
class AgentSession:
    """One agent execution as tracked by the manager.

    The execution handle itself lives in the provider; ``pid`` is only
    the persisted process identity used for liveness checks at recovery.
    """
    id: str
    session_id: str
    name: str
    role: str
    work_dir: str
    patterns: list[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.RUNNING
    started_at: int = field(default_factory=now_ms)
    ended_at: int | None = None
    pid: int | None = None

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def to_config(self) -> AgentConfig:
        return AgentConfig(
            id=self.id,
            session_id=self.session_id,
            name=self.name,
            role=self.role,
            work_dir=self.work_dir,
            patterns=list(self.patterns),
        )

    def to_public_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "sessionId": self.session_id,
            "name": self.name,
            "role": self.role,
            "workDir": self.work_dir,
            "patterns": list(self.patterns),
            "status": self.status.value,
            "startedAt": self.started_at,
        }
        if self.ended_at is not None:
            d["endedAt"] = self.ended_at
        return d

    def to_record(self) -> dict[str, Any]:
        d = self.to_public_dict()
        d["pid"] = self.pid
        return d

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> AgentSession:
        """Build from a persisted record. Raises KeyError/ValueError on bad data."""
        patterns = data.get("patterns") or []
        if not isinstance(patterns, list):
            raise ValueError(f"patterns must be a list, got {type(patterns).__name__}")
        pid = data.get("pid")
        return cls(
            id=str(data["id"]),
            session_id=str(data["sessionId"]),
            name=str(data["name"]),
            role=str(data.get("role", "")),
            work_dir=str(data["workDir"]),
            patterns=[str(p) for p in patterns],
            status=SessionStatus(data.get("status", SessionStatus.STOPPED.value)),
            started_at=int(data.get("startedAt") or now_ms()),
            ended_at=int(data["endedAt"]) if data.get("endedAt") is not None else None,
            pid=int(pid) if pid is not None else None,
        )


@dataclass
class ChangeProposal:
    """A file edit detected in agent output, awaiting a human decision."""
    id: str
    session_id: str
    agent_id: str
    agent_name: str
    file_path: str
    before: str
    after: str
    status: ChangeStatus = ChangeStatus.PENDING
    timestamp: int = field(default_factory=now_ms)
    instruction: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "sessionId": self.session_id,
            "agentId": self.agent_id,
            "agentName": self.agent_name,
            "filePath": self.file_path,
            "before": self.before,
            "after": self.after,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.instruction is not None:
            d["instruction"] = self.instruction
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeProposal:
        return cls(
            id=str(data["id"]),
            session_id=str(data.get("sessionId", "")),
            agent_id=str(data["agentId"]),
            agent_name=str(data.get("agentName", "")),
            file_path=str(data.get("filePath", "")),
            before=str(data.get("before", "")),
            after=str(data.get("after", "")),
            status=ChangeStatus(data.get("status", ChangeStatus.PENDING.value)),
            timestamp=int(data.get("timestamp") or now_ms()),
            instruction=data.get("instruction"),
        )


@dataclass
class EditPermissionRequest:
    """A file-mutating tool call held until a human approves it."""
    tool_use_id: str
    agent_id: str
    session_id: str
    file_path: str
    old_string: str = ""
    new_string: str = ""
    tool_name: str = "Edit"

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolUseId": self.tool_use_id,
            "agentId": self.agent_id,
            "sessionId": self.session_id,
            "filePath": self.file_path,
            "oldString": self.old_string,
            "newString": self.new_string,
            "toolName": self.tool_name,
        }
