"""Agent session manager.

Owns the session table, the change-proposal table and the per-agent
output buffers; nothing else writes to them. Commands arrive from the
HTTP layer as method calls. Provider events arrive through the
EventBus and are handled one at a time by a single consumer task, so
events of one agent are applied in production order.

Routine races (unknown id, already stopped, already resolved) come
back as CommandStatus values instead of exceptions.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from agentdeck.adapters.broadcast import BroadcastFanout
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AgentExited,
    AgentOutput,
    ChangeStatusChanged,
    EditPermissionPending,
    EditPermissionRequested,
    NewChangeProposal,
    ObserverEvent,
    ProviderEvent,
    SessionDeleted,
    SessionOutput,
    SessionStarted,
    SessionStopped,
)
from agentdeck.shared.services.persistence import DeckPersistence
from agentdeck.shared.services.process_cleanup import (
    is_process_alive,
    terminate_process,
)

from .change_parser import ChangeParser, has_confirmation_prompt
from .errors import RemoteDecisionError
from .lifecycle import validate_change_transition, validate_session_transition
from .models import (
    AgentSession,
    ChangeProposal,
    ChangeStatus,
    CommandStatus,
    OutputStream,
    SessionStatus,
    new_agent_id,
    new_change_id,
    new_session_id,
    now_ms,
)
from .output_buffer import DEFAULT_CAPACITY, OutputBuffer
from .providers.base import APPROVE_ANSWER, DECLINE_ANSWER, ExecutionProvider

logger = logging.getLogger(__name__)

CRASH_HINT = "Claude Code may not be installed or not in PATH"


class SessionManager:
    """Creates, tracks, persists and tears down agent sessions."""

    def __init__(
        self,
        provider: ExecutionProvider,
        event_bus: EventBus,
        fanout: BroadcastFanout,
        persistence: DeckPersistence | None = None,
        *,
        buffer_size: int = DEFAULT_CAPACITY,
        crash_window_seconds: float = 5.0,
        parser: ChangeParser | None = None,
    ) -> None:
        self._provider = provider
        self._bus = event_bus
        self._fanout = fanout
        self._persistence = persistence
        self._buffer_size = buffer_size
        self._crash_window = crash_window_seconds
        self._parser = parser or ChangeParser()

        self._sessions: dict[str, AgentSession] = {}
        self._changes: dict[str, ChangeProposal] = {}
        self._buffers: dict[str, OutputBuffer] = {}
        self._started_mono: dict[str, float] = {}
        self._consumer_task: asyncio.Task | None = None

    @property
    def provider(self) -> ExecutionProvider:
        return self._provider

    # ── Lifecycle ──

    def start(self) -> None:
        """Begin draining provider events."""
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(
                self._consume(), name="session-manager-events",
            )

    async def shutdown(self) -> None:
        """Stop every running session, persist, and stop consuming."""
        for session in list(self._sessions.values()):
            if session.is_running:
                await self.stop_session(session.id)
        await self._provider.shutdown()
        self._bus.close()
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None
        self._persist_all()

    async def _consume(self) -> None:
        async for event in self._bus.consume():
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(
                    "Failed to handle %s for agent %s",
                    event.event_type, event.agent_id[:12],
                )
            finally:
                self._bus.task_done()

    async def wait_idle(self) -> None:
        """Block until every event queued so far has been handled."""
        await self._bus.wait_drained()

    # ── Session commands ──

    async def start_session(
        self,
        name: str,
        role: str,
        work_dir: str,
        patterns: list[str] | None = None,
        session_id: str | None = None,
    ) -> AgentSession:
        """Register a running session and hand it to the provider."""
        if not name or not role or not work_dir:
            raise ValueError("name, role and workDir are required")
        if session_id is not None and not isinstance(session_id, str):
            raise ValueError("sessionId must be a string")

        sid = session_id or new_session_id(name)
        for other in list(self._sessions.values()):
            if other.session_id == sid and other.is_running:
                logger.info(
                    "Session %s already running as %s; stopping it first",
                    sid, other.id[:12],
                )
                await self.stop_session(other.id)

        session = AgentSession(
            id=new_agent_id(),
            session_id=sid,
            name=name,
            role=role,
            work_dir=work_dir,
            patterns=list(patterns or []),
        )
        self._sessions[session.id] = session
        self._buffers[session.id] = OutputBuffer(self._buffer_size)
        self._started_mono[session.id] = time.monotonic()

        await self._provider.start(session.to_config())
        session.pid = self._provider.process_id(session.id)
        logger.info(
            "Session started agent=%s session=%s name=%s role=%s cwd=%s pid=%s",
            session.id, sid, name, role, work_dir, session.pid,
        )
        self._publish(SessionStarted(session=session.to_public_dict()))
        self._persist_sessions()
        return session

    async def restart_session(
        self, agent_id: str,
    ) -> tuple[CommandStatus, AgentSession | None]:
        """Continue a conversation: new agent, same logical session id."""
        previous = self._sessions.get(agent_id)
        if previous is None:
            return CommandStatus.NOT_FOUND, None
        session = await self.start_session(
            previous.name,
            previous.role,
            previous.work_dir,
            previous.patterns,
            session_id=previous.session_id,
        )
        return CommandStatus.OK, session

    async def stop_session(self, agent_id: str) -> CommandStatus:
        session = self._sessions.get(agent_id)
        if session is None:
            return CommandStatus.NOT_FOUND
        if not session.is_running:
            return CommandStatus.OK
        # Mark first so events still in flight for this agent are dropped.
        self._mark_stopped(session)
        try:
            await self._provider.stop(agent_id)
        except Exception:
            logger.exception("Provider failed to stop agent %s", agent_id[:12])
        logger.info("Session stopped agent=%s session=%s", agent_id, session.session_id)
        self._publish(SessionStopped(agent_id=agent_id, session_id=session.session_id))
        self._persist_sessions()
        return CommandStatus.OK

    async def delete_session(self, agent_id: str) -> CommandStatus:
        session = self._sessions.get(agent_id)
        if session is None:
            return CommandStatus.NOT_FOUND
        if session.is_running:
            await self.stop_session(agent_id)
        self._sessions.pop(agent_id, None)
        self._buffers.pop(agent_id, None)
        self._started_mono.pop(agent_id, None)
        logger.info("Session deleted agent=%s session=%s", agent_id, session.session_id)
        self._publish(SessionDeleted(agent_id=agent_id, session_id=session.session_id))
        self._persist_sessions()
        return CommandStatus.OK

    async def interrupt_session(self, agent_id: str) -> CommandStatus:
        status = self._running_status(agent_id)
        if status is not CommandStatus.OK:
            return status
        ok = await self._provider.interrupt(agent_id)
        return CommandStatus.OK if ok else CommandStatus.FAILED

    async def send_message(self, agent_id: str, text: str) -> CommandStatus:
        status = self._running_status(agent_id)
        if status is not CommandStatus.OK:
            return status
        ok = await self._provider.send_input(agent_id, text)
        return CommandStatus.OK if ok else CommandStatus.FAILED

    async def approve_edit(self, agent_id: str, tool_use_id: str) -> CommandStatus:
        return await self._resolve_edit(agent_id, tool_use_id, True)

    async def reject_edit(self, agent_id: str, tool_use_id: str) -> CommandStatus:
        return await self._resolve_edit(agent_id, tool_use_id, False)

    async def _resolve_edit(
        self, agent_id: str, tool_use_id: str, approved: bool,
    ) -> CommandStatus:
        status = self._running_status(agent_id)
        if status is not CommandStatus.OK:
            return status
        return await self._provider.resolve_approval(tool_use_id, approved, agent_id)

    def _running_status(self, agent_id: str) -> CommandStatus:
        session = self._sessions.get(agent_id)
        if session is None:
            return CommandStatus.NOT_FOUND
        if not session.is_running:
            return CommandStatus.FAILED
        return CommandStatus.OK

    # ── Change commands ──

    async def accept_change(self, change_id: str) -> CommandStatus:
        return await self._decide_change(change_id, accept=True)

    async def decline_change(self, change_id: str) -> CommandStatus:
        return await self._decide_change(change_id, accept=False)

    async def _decide_change(self, change_id: str, *, accept: bool) -> CommandStatus:
        """Tentatively mark processing, tell the agent, then confirm or roll back."""
        change = self._changes.get(change_id)
        if change is None:
            return CommandStatus.NOT_FOUND
        if change.status != ChangeStatus.PENDING:
            logger.info(
                "Change %s is %s; ignoring %s",
                change_id, change.status.value, "accept" if accept else "decline",
            )
            return CommandStatus.FAILED

        self._set_change_status(change, ChangeStatus.PROCESSING)
        try:
            await self._deliver_decision(change, accept)
        except RemoteDecisionError as exc:
            logger.warning("%s; reverting to pending", exc)
            self._set_change_status(change, ChangeStatus.PENDING)
            self._persist_changes()
            return CommandStatus.FAILED

        target = ChangeStatus.ACCEPTED if accept else ChangeStatus.DECLINED
        self._set_change_status(change, target)
        self._persist_changes()
        return CommandStatus.OK

    async def _deliver_decision(self, change: ChangeProposal, accept: bool) -> None:
        session = self._sessions.get(change.agent_id)
        if session is None or not session.is_running:
            raise RemoteDecisionError(
                change.id, f"agent {change.agent_id[:12]} is not running",
            )
        answer = APPROVE_ANSWER if accept else DECLINE_ANSWER
        try:
            delivered = await self._provider.send_input(change.agent_id, answer)
        except Exception as exc:
            raise RemoteDecisionError(change.id, str(exc) or type(exc).__name__) from exc
        if not delivered:
            raise RemoteDecisionError(change.id, "agent did not accept input")

    async def send_change_instruction(
        self, change_id: str, instruction: str,
    ) -> CommandStatus:
        change = self._changes.get(change_id)
        if change is None:
            return CommandStatus.NOT_FOUND
        if change.status != ChangeStatus.PENDING:
            return CommandStatus.FAILED
        if self._running_status(change.agent_id) is not CommandStatus.OK:
            return CommandStatus.FAILED
        if not await self._provider.send_input(change.agent_id, instruction):
            return CommandStatus.FAILED
        change.instruction = instruction
        self._publish(ChangeStatusChanged(
            change_id=change.id, status=change.status.value, change=change.to_dict(),
        ))
        self._persist_changes()
        return CommandStatus.OK

    def _set_change_status(self, change: ChangeProposal, target: ChangeStatus) -> None:
        validate_change_transition(change.status, target)
        logger.info("Change %s: %s -> %s", change.id, change.status.value, target.value)
        change.status = target
        self._publish(ChangeStatusChanged(
            change_id=change.id, status=target.value, change=change.to_dict(),
        ))

    # ── Queries ──

    def list_sessions(self) -> list[AgentSession]:
        return sorted(self._sessions.values(), key=lambda s: s.started_at)

    def get_session(self, agent_id: str) -> AgentSession | None:
        return self._sessions.get(agent_id)

    def get_output(self, agent_id: str, limit: int | None = None) -> list[str] | None:
        buffer = self._buffers.get(agent_id)
        if buffer is None:
            return None
        return buffer.get_all() if limit is None else buffer.get_recent(limit)

    def get_session_history(
        self, session_id: str, limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if self._persistence is None:
            return []
        return self._persistence.read_output(session_id, limit)

    def list_changes(self, status: ChangeStatus | None = None) -> list[ChangeProposal]:
        changes = list(self._changes.values())
        if status is not None:
            changes = [c for c in changes if c.status == status]
        return changes

    def get_change(self, change_id: str) -> ChangeProposal | None:
        return self._changes.get(change_id)

    # ── Provider events ──

    async def handle_event(self, event: ProviderEvent) -> None:
        if isinstance(event, AgentOutput):
            self._route_output(event)
        elif isinstance(event, EditPermissionRequested):
            self._route_permission(event)
        elif isinstance(event, AgentExited):
            self._route_exit(event)
        else:
            logger.debug("Ignoring unknown provider event %s", event.event_type)

    def _route_output(self, event: AgentOutput) -> None:
        session = self._sessions.get(event.agent_id)
        if session is None or not session.is_running:
            logger.debug("Dropping output for inactive agent %s", event.agent_id[:12])
            return
        self._record_output(session, event.text, event.stream)

        parsed = self._parser.parse(event.text)
        if parsed is None:
            if has_confirmation_prompt(event.text):
                logger.info(
                    "Agent %s is waiting for a yes/no answer (no edit extracted)",
                    session.id[:12],
                )
            return
        change = ChangeProposal(
            id=new_change_id(),
            session_id=session.session_id,
            agent_id=session.id,
            agent_name=session.name,
            file_path=parsed.file_path,
            before=parsed.before,
            after=parsed.after,
        )
        self._changes[change.id] = change
        logger.info(
            "Change proposal %s from agent %s for %s",
            change.id, session.id[:12], change.file_path,
        )
        self._publish(NewChangeProposal(change=change.to_dict()))
        self._persist_changes()

    def _route_permission(self, event: EditPermissionRequested) -> None:
        session = self._sessions.get(event.agent_id)
        if session is None or not session.is_running or event.request is None:
            logger.debug("Dropping edit permission for inactive agent %s", event.agent_id[:12])
            return
        logger.info(
            "Edit permission requested agent=%s tool_use=%s file=%s",
            event.agent_id[:12], event.request.tool_use_id, event.request.file_path,
        )
        self._publish(EditPermissionPending(request=event.request.to_dict()))

    def _route_exit(self, event: AgentExited) -> None:
        session = self._sessions.get(event.agent_id)
        if session is None or not session.is_running:
            return
        code = event.code
        if code not in (0, None):
            message = f"[exit] Agent exited with code {code}"
            started = self._started_mono.get(session.id)
            if started is not None and time.monotonic() - started < self._crash_window:
                message += f". {CRASH_HINT}"
            self._record_output(session, message, OutputStream.STDERR)
        self._mark_stopped(session)
        logger.info(
            "Session exited agent=%s session=%s code=%s", session.id, session.session_id, code,
        )
        self._publish(SessionStopped(
            agent_id=session.id, session_id=session.session_id, exit_code=code,
        ))
        self._persist_sessions()

    def _record_output(
        self, session: AgentSession, text: str, stream: OutputStream,
    ) -> None:
        buffer = self._buffers.get(session.id)
        if buffer is None:
            buffer = self._buffers[session.id] = OutputBuffer(self._buffer_size)
        buffer.push(text)
        timestamp = now_ms()
        if self._persistence is not None:
            try:
                timestamp = self._persistence.append_output(
                    session.session_id, session.id, text, stream.value,
                )
            except Exception:
                logger.exception("Failed to append output log for %s", session.session_id)
        self._publish(SessionOutput(
            timestamp=timestamp,
            agent_id=session.id,
            session_id=session.session_id,
            output=text,
            stream=stream.value,
        ))

    def _mark_stopped(self, session: AgentSession) -> None:
        validate_session_transition(session.status, SessionStatus.STOPPED)
        session.status = SessionStatus.STOPPED
        session.ended_at = now_ms()

    def _publish(self, event: ObserverEvent) -> None:
        self._fanout.publish(event)

    # ── Persistence ──

    def recover(self) -> int:
        """Reload persisted state after a restart. Returns sessions loaded.

        Agent processes recorded as running are terminated if still
        alive; every recovered session ends up stopped. Pending edit
        approvals are not persisted and so are lost (denied) here.
        """
        if self._persistence is None:
            return 0
        loaded = 0
        for record in self._persistence.load_session_records():
            try:
                session = AgentSession.from_record(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping bad session record %r: %s", record.get("id"), exc)
                continue
            if session.is_running:
                self._reap_orphan(session)
                session.status = SessionStatus.STOPPED
                session.ended_at = session.ended_at or now_ms()
            session.pid = None
            self._sessions[session.id] = session
            buffer = OutputBuffer(self._buffer_size)
            buffer.extend(
                entry["output"]
                for entry in self._persistence.read_output(session.session_id)
                if entry.get("agentId") == session.id and isinstance(entry.get("output"), str)
            )
            self._buffers[session.id] = buffer
            loaded += 1

        for record in self._persistence.load_change_records():
            try:
                change = ChangeProposal.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping bad change record %r: %s", record.get("id"), exc)
                continue
            if change.status == ChangeStatus.PROCESSING:
                # The decision was never confirmed.
                change.status = ChangeStatus.PENDING
            self._changes[change.id] = change

        logger.info(
            "Recovered %d session(s) and %d change(s) from %s",
            loaded, len(self._changes), self._persistence.data_dir,
        )
        self._persist_all()
        return loaded

    def _reap_orphan(self, session: AgentSession) -> None:
        if session.pid is None or not is_process_alive(session.pid):
            return
        try:
            terminate_process(session.pid)
            logger.info(
                "Terminated orphaned agent %s pid=%d", session.id[:12], session.pid,
            )
        except OSError as exc:
            logger.warning(
                "Could not terminate orphaned agent %s pid=%d: %s",
                session.id[:12], session.pid, exc,
            )

    def _persist_sessions(self) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_sessions(
                [s.to_record() for s in self._sessions.values()]
            )
        except OSError as exc:
            logger.error("Failed to persist sessions: %s", exc)

    def _persist_changes(self) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_changes(
                [c.to_dict() for c in self._changes.values()]
            )
        except OSError as exc:
            logger.error("Failed to persist changes: %s", exc)

    def _persist_all(self) -> None:
        self._persist_sessions()
        self._persist_changes()
