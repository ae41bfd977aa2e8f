"""Abstract base for agent execution providers.

A provider runs agent executions and reports what happens through
typed events on the EventBus. The session manager is the only consumer
of those events; it never touches provider internals. Two strategies
exist (in-process SDK and CLI subprocess) and one is chosen when the
server is built.

Every provider owns an EditPermissionGate. File-mutating tool calls
block on it until a human decides or the deadline denies them.
"""
from __future__ import annotations

import abc
import logging
import shutil

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AgentExited,
    AgentOutput,
    EditPermissionRequested,
    ProviderEvent,
)
from agentdeck.engine.models import (
    AgentConfig,
    CommandStatus,
    EditPermissionRequest,
    OutputStream,
)
from agentdeck.engine.permission_gate import EditPermissionGate

logger = logging.getLogger(__name__)

APPROVE_ANSWER = "y"
DECLINE_ANSWER = "n"


def initial_prompt(config: AgentConfig) -> str:
    """System-authored first message establishing persona and workdir."""
    prompt = (
        f"You are {config.name}, a {config.role} agent. "
        f"Your working directory is {config.work_dir}. "
    )
    if config.patterns:
        prompt += (
            "Only modify files matching these patterns: "
            f"{', '.join(config.patterns)}. "
        )
    return prompt + "Please introduce yourself and wait for instructions."


class ExecutionProvider(abc.ABC):
    """Abstract execution strategy.

    Implementations:
    - ClaudeSDKProvider: in-process ClaudeSDKClient session
    - ClaudeCLIProvider: `claude` subprocess speaking stream-json
    """

    def __init__(
        self,
        event_bus: EventBus,
        *,
        model: str | None = None,
        approval_timeout: float = 300.0,
    ) -> None:
        self._bus = event_bus
        self._model = model
        self._approval_timeout = approval_timeout
        self.gate = EditPermissionGate(default_timeout=approval_timeout)
        # Agents that were stopped; nothing more is emitted for them.
        self._silenced: set[str] = set()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short strategy name ('sdk' or 'cli')."""

    @abc.abstractmethod
    async def start(self, config: AgentConfig) -> None:
        """Begin an execution and return once its loop is scheduled.

        Startup failures are reported as an error output event
        followed by exit(1); they never raise into the caller.
        """

    @abc.abstractmethod
    async def send_input(self, agent_id: str, text: str) -> bool:
        """Queue a user message. False when the agent is not active."""

    @abc.abstractmethod
    async def interrupt(self, agent_id: str) -> bool:
        """Cancel the in-flight turn; the execution stays alive."""

    @abc.abstractmethod
    async def stop(self, agent_id: str) -> None:
        """Tear the execution down. No events follow for this agent."""

    @abc.abstractmethod
    def is_active(self, agent_id: str) -> bool:
        """True while an execution for *agent_id* is running."""

    def process_id(self, agent_id: str) -> int | None:
        """OS pid backing the execution, if the strategy has one."""
        return None

    def is_available(self) -> bool:
        return True

    async def resolve_approval(
        self,
        tool_use_id: str,
        approved: bool,
        agent_id: str | None = None,
    ) -> CommandStatus:
        """Settle a pending edit approval. At most one call succeeds."""
        return self.gate.resolve(tool_use_id, approved, agent_id)

    async def shutdown(self) -> None:
        """Stop every active execution."""
        for agent_id in list(self.active_agents()):
            await self.stop(agent_id)
        self.gate.reject_all()

    @abc.abstractmethod
    def active_agents(self) -> list[str]:
        """Ids of agents with a live execution."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a binary by preferring the explicit command, then fallback."""
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug("Command %s not found; falling back to %s", command, fallback)
            return fallback
        return command or fallback or ""

    def _release(self, agent_id: str) -> None:
        """Forget a stopped agent once its tasks can no longer emit."""
        self._silenced.discard(agent_id)

    # ── Event helpers ──

    async def _emit(self, event: ProviderEvent) -> None:
        if event.agent_id in self._silenced:
            logger.debug(
                "Suppressed %s for stopped agent %s",
                event.event_type, event.agent_id[:12],
            )
            return
        await self._bus.emit(event)

    async def _emit_output(
        self,
        config: AgentConfig,
        text: str,
        stream: OutputStream = OutputStream.STDOUT,
    ) -> None:
        if not text:
            return
        await self._emit(AgentOutput(
            agent_id=config.id,
            session_id=config.session_id,
            text=text,
            stream=stream,
        ))

    async def _emit_exit(self, config: AgentConfig, code: int | None) -> None:
        await self._emit(AgentExited(
            agent_id=config.id,
            session_id=config.session_id,
            code=code,
        ))

    async def _emit_permission(self, request: EditPermissionRequest) -> None:
        await self._emit(EditPermissionRequested(
            agent_id=request.agent_id,
            session_id=request.session_id,
            request=request,
        ))
