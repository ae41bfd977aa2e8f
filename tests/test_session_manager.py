from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from agentdeck.adapters.broadcast import BroadcastFanout
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import AgentOutput
from agentdeck.engine.models import (
    ApprovalDecision,
    ChangeStatus,
    CommandStatus,
    SessionStatus,
)
from agentdeck.engine.session_manager import CRASH_HINT, SessionManager
from agentdeck.shared.services.persistence import DeckPersistence

from fake_provider import FakeProvider

EDIT_TEXT = (
    "Edit src/app.py:\n"
    "@@ -1 +1 @@\n"
    "-x = 1\n"
    "+x = 2\n"
    "Do you want to make this edit?"
)


def _drain(queue: asyncio.Queue) -> list[dict]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def _events(queue: asyncio.Queue, name: str) -> list[dict]:
    return [m for m in _drain(queue) if m["event"] == name]


class _Harness:
    def __init__(self, data_dir: Path | None = None) -> None:
        self.bus = EventBus()
        self.fanout = BroadcastFanout()
        self.provider = FakeProvider(self.bus)
        self.persistence = DeckPersistence(data_dir) if data_dir else None
        self.manager = SessionManager(
            self.provider, self.bus, self.fanout, self.persistence,
        )
        self.observer = self.fanout.subscribe()

    async def flush(self) -> None:
        """Hand every queued provider event to the manager."""
        while self.bus.qsize():
            event = await self.bus._queue.get()
            await self.manager.handle_event(event)
            self.bus.task_done()

    async def start(self, name: str = "Bot", session_id: str | None = None):
        return await self.manager.start_session(
            name, "dev", "/tmp/x", ["**/*"], session_id=session_id,
        )


@pytest.mark.asyncio
async def test_output_reaches_buffer_and_observer_once():
    h = _Harness()
    session = await h.start()
    _drain(h.observer)

    await h.provider.output(session.id, "Hello, I am Bot")
    await h.flush()

    assert h.manager.get_output(session.id) == ["Hello, I am Bot"]
    outputs = _events(h.observer, "session_output")
    assert len(outputs) == 1
    assert outputs[0]["data"]["output"] == "Hello, I am Bot"
    assert outputs[0]["data"]["agentId"] == session.id


@pytest.mark.asyncio
async def test_start_registers_running_session_and_broadcasts():
    h = _Harness()
    session = await h.start(name="My Bot")

    assert session.status == SessionStatus.RUNNING
    assert session.session_id.startswith("session-my-bot-")
    assert session.id.startswith("agent-")
    assert session.pid == 4242
    assert h.provider.configs[session.id].patterns == ["**/*"]
    started = _events(h.observer, "session_started")
    assert started[0]["data"]["session"]["id"] == session.id


@pytest.mark.asyncio
async def test_start_requires_name_role_and_workdir():
    h = _Harness()
    with pytest.raises(ValueError):
        await h.manager.start_session("", "dev", "/tmp/x")
    with pytest.raises(ValueError, match="sessionId"):
        await h.manager.start_session("Bot", "dev", "/tmp/x", session_id=42)
    assert h.manager.list_sessions() == []


@pytest.mark.asyncio
async def test_same_session_id_never_runs_twice():
    h = _Harness()
    first = await h.start(session_id="session-shared")
    second = await h.start(session_id="session-shared")

    assert first.status == SessionStatus.STOPPED
    assert second.status == SessionStatus.RUNNING
    running = [
        s for s in h.manager.list_sessions()
        if s.session_id == "session-shared" and s.is_running
    ]
    assert running == [second]
    assert h.provider.stopped == [first.id]


@pytest.mark.asyncio
async def test_restart_reuses_session_id():
    h = _Harness()
    first = await h.start()
    await h.manager.stop_session(first.id)

    status, second = await h.manager.restart_session(first.id)

    assert status == CommandStatus.OK
    assert second.id != first.id
    assert second.session_id == first.session_id
    assert second.is_running
    status, none = await h.manager.restart_session("agent-missing")
    assert status == CommandStatus.NOT_FOUND and none is None


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    h = _Harness()
    session = await h.start()

    assert await h.manager.stop_session(session.id) == CommandStatus.OK
    assert await h.manager.stop_session(session.id) == CommandStatus.OK
    assert await h.manager.stop_session("agent-nope") == CommandStatus.NOT_FOUND
    assert h.provider.stopped == [session.id]
    assert session.ended_at is not None
    assert len(_events(h.observer, "session_stopped")) == 1


@pytest.mark.asyncio
async def test_delete_stops_then_removes():
    h = _Harness()
    session = await h.start()

    assert await h.manager.delete_session(session.id) == CommandStatus.OK
    assert h.manager.get_session(session.id) is None
    assert h.manager.get_output(session.id) is None
    assert h.provider.stopped == [session.id]
    assert await h.manager.delete_session(session.id) == CommandStatus.NOT_FOUND
    names = [m["event"] for m in _drain(h.observer)]
    assert names.index("session_stopped") < names.index("session_deleted")


@pytest.mark.asyncio
async def test_message_and_interrupt_pass_through():
    h = _Harness()
    session = await h.start()

    assert await h.manager.send_message(session.id, "do it") == CommandStatus.OK
    assert h.provider.inputs == [(session.id, "do it")]
    assert await h.manager.interrupt_session(session.id) == CommandStatus.OK
    assert h.provider.interrupts == [session.id]

    await h.manager.stop_session(session.id)
    assert await h.manager.send_message(session.id, "again") == CommandStatus.FAILED
    assert await h.manager.interrupt_session(session.id) == CommandStatus.FAILED
    assert await h.manager.send_message("agent-x", "hi") == CommandStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_edit_approval_resolves_exactly_once():
    h = _Harness()
    session = await h.start()
    future = await h.provider.request_edit(session.id, "t1", "a.ts")
    await h.flush()

    pending = _events(h.observer, "edit_permission_requested")
    assert pending[0]["data"]["request"]["toolUseId"] == "t1"
    assert pending[0]["data"]["request"]["filePath"] == "a.ts"

    assert await h.manager.approve_edit(session.id, "t1") == CommandStatus.OK
    assert await future == ApprovalDecision.APPROVED
    assert await h.manager.approve_edit(session.id, "t1") == CommandStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_reject_edit_and_unknown_agent():
    h = _Harness()
    session = await h.start()
    future = await h.provider.request_edit(session.id, "t2", "b.ts")

    assert await h.manager.reject_edit("agent-other", "t2") == CommandStatus.NOT_FOUND
    assert await h.manager.reject_edit(session.id, "t2") == CommandStatus.OK
    assert await future == ApprovalDecision.DENIED


@pytest.mark.asyncio
async def test_crash_marks_stopped_with_diagnostic_and_drops_later_output():
    h = _Harness()
    session = await h.start()
    _drain(h.observer)

    await h.provider.exit(session.id, 1)
    await h.flush()

    assert session.status == SessionStatus.STOPPED
    output = h.manager.get_output(session.id)
    assert len(output) == 1
    assert "code 1" in output[0]
    assert CRASH_HINT in output[0]
    stopped = _events(h.observer, "session_stopped")
    assert stopped and stopped[0]["data"]["exitCode"] == 1

    # A late chunk for the same agent is ignored.
    await h.manager.handle_event(AgentOutput(
        agent_id=session.id, session_id=session.session_id, text="late",
    ))
    assert h.manager.get_output(session.id) == output
    assert _events(h.observer, "session_output") == []


@pytest.mark.asyncio
async def test_clean_exit_has_no_diagnostic():
    h = _Harness()
    session = await h.start()

    await h.provider.exit(session.id, 0)
    await h.flush()

    assert session.status == SessionStatus.STOPPED
    assert h.manager.get_output(session.id) == []


@pytest.mark.asyncio
async def test_exit_after_crash_window_has_no_install_hint():
    h = _Harness()
    h.manager._crash_window = 0.0
    session = await h.start()

    await h.provider.exit(session.id, 2)
    await h.flush()

    assert CRASH_HINT not in h.manager.get_output(session.id)[0]


@pytest.mark.asyncio
async def test_no_events_after_stop():
    h = _Harness()
    session = await h.start()
    await h.manager.stop_session(session.id)

    await h.provider.output(session.id, "after stop")
    await h.provider.exit(session.id, 1)

    assert h.bus.qsize() == 0


async def _with_change(h: _Harness):
    session = await h.start()
    await h.provider.output(session.id, EDIT_TEXT)
    await h.flush()
    changes = h.manager.list_changes()
    assert len(changes) == 1
    return session, changes[0]


@pytest.mark.asyncio
async def test_output_with_edit_prompt_creates_pending_change():
    h = _Harness()
    session, change = await _with_change(h)

    assert change.status == ChangeStatus.PENDING
    assert change.file_path == "src/app.py"
    assert change.before == "x = 1"
    assert change.after == "x = 2"
    assert change.agent_id == session.id
    assert change.agent_name == "Bot"
    assert h.manager.get_change(change.id) is change
    assert _events(h.observer, "new_change_proposal")


@pytest.mark.asyncio
async def test_accept_confirms_after_delivery():
    h = _Harness()
    session, change = await _with_change(h)
    _drain(h.observer)

    assert await h.manager.accept_change(change.id) == CommandStatus.OK

    assert change.status == ChangeStatus.ACCEPTED
    assert h.provider.inputs[-1] == (session.id, "y")
    statuses = [m["data"]["status"] for m in _events(h.observer, "change_status_changed")]
    assert statuses == ["processing", "accepted"]


@pytest.mark.asyncio
async def test_decline_confirms_after_delivery():
    h = _Harness()
    session, change = await _with_change(h)

    assert await h.manager.decline_change(change.id) == CommandStatus.OK
    assert change.status == ChangeStatus.DECLINED
    assert h.provider.inputs[-1] == (session.id, "n")


@pytest.mark.asyncio
async def test_accept_rolls_back_when_delivery_fails():
    h = _Harness()
    _, change = await _with_change(h)
    h.provider.accept_input = False
    _drain(h.observer)

    assert await h.manager.accept_change(change.id) == CommandStatus.FAILED

    assert change.status == ChangeStatus.PENDING
    statuses = [m["data"]["status"] for m in _events(h.observer, "change_status_changed")]
    assert statuses == ["processing", "pending"]


@pytest.mark.asyncio
async def test_decline_rolls_back_when_delivery_raises():
    h = _Harness()
    _, change = await _with_change(h)
    h.provider.input_error = BrokenPipeError("gone")

    assert await h.manager.decline_change(change.id) == CommandStatus.FAILED
    assert change.status == ChangeStatus.PENDING


@pytest.mark.asyncio
async def test_accept_with_stopped_agent_rolls_back():
    h = _Harness()
    session, change = await _with_change(h)
    await h.manager.stop_session(session.id)

    assert await h.manager.accept_change(change.id) == CommandStatus.FAILED
    assert change.status == ChangeStatus.PENDING


@pytest.mark.asyncio
async def test_decided_change_cannot_be_decided_again():
    h = _Harness()
    _, change = await _with_change(h)
    await h.manager.accept_change(change.id)

    assert await h.manager.decline_change(change.id) == CommandStatus.FAILED
    assert await h.manager.accept_change(change.id) == CommandStatus.FAILED
    assert change.status == ChangeStatus.ACCEPTED
    assert await h.manager.accept_change("change-missing") == CommandStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_change_instruction_forwards_text():
    h = _Harness()
    session, change = await _with_change(h)

    status = await h.manager.send_change_instruction(change.id, "use a constant")

    assert status == CommandStatus.OK
    assert change.instruction == "use a constant"
    assert change.status == ChangeStatus.PENDING
    assert h.provider.inputs[-1] == (session.id, "use a constant")
    assert await h.manager.send_change_instruction("nope", "x") == CommandStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_list_changes_filters_by_status():
    h = _Harness()
    _, change = await _with_change(h)
    await h.manager.decline_change(change.id)

    assert h.manager.list_changes(ChangeStatus.PENDING) == []
    assert h.manager.list_changes(ChangeStatus.DECLINED) == [change]


@pytest.mark.asyncio
async def test_consumer_task_drains_bus_in_order():
    h = _Harness()
    h.manager.start()
    try:
        session = await h.start()
        for i in range(5):
            await h.provider.output(session.id, f"chunk {i}")
        await asyncio.wait_for(h.manager.wait_idle(), timeout=5.0)
        assert h.manager.get_output(session.id) == [f"chunk {i}" for i in range(5)]
    finally:
        await h.manager.shutdown()


@pytest.mark.asyncio
async def test_state_and_output_log_are_persisted():
    with tempfile.TemporaryDirectory() as tmpdir:
        h = _Harness(Path(tmpdir))
        session = await h.start()
        await h.provider.output(session.id, "first")
        await h.provider.output(session.id, EDIT_TEXT)
        await h.flush()

        records = h.persistence.load_session_records()
        assert records[0]["id"] == session.id
        assert records[0]["pid"] == 4242
        assert records[0]["status"] == "running"
        assert len(h.persistence.load_change_records()) == 1

        history = h.manager.get_session_history(session.session_id)
        assert [e["output"] for e in history] == ["first", EDIT_TEXT]
        assert history[0]["timestamp"] < history[1]["timestamp"]

        await h.manager.stop_session(session.id)
        assert h.persistence.load_session_records()[0]["status"] == "stopped"


@pytest.mark.asyncio
async def test_output_is_published_when_log_append_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        h = _Harness(Path(tmpdir))
        session = await h.start()
        _drain(h.observer)

        with patch.object(
            h.persistence, "append_output", side_effect=TypeError("bad name"),
        ):
            await h.provider.output(session.id, "still visible")
            await h.flush()

        assert h.manager.get_output(session.id) == ["still visible"]
        outputs = _events(h.observer, "session_output")
        assert [o["data"]["output"] for o in outputs] == ["still visible"]


@pytest.mark.asyncio
async def test_get_output_limit_returns_most_recent():
    h = _Harness()
    session = await h.start()
    for text in ("one", "two", "three"):
        await h.provider.output(session.id, text)
    await h.flush()

    assert h.manager.get_output(session.id, 2) == ["two", "three"]
    assert h.manager.get_output(session.id) == ["one", "two", "three"]
    assert h.manager.get_output("agent-nope", 2) is None


@pytest.mark.asyncio
async def test_unparsed_confirmation_prompt_creates_no_change(caplog):
    h = _Harness()
    session = await h.start()
    await h.provider.output(session.id, "Run the migration? (y/n)")

    with caplog.at_level("INFO", logger="agentdeck.engine.session_manager"):
        await h.flush()

    assert h.manager.list_changes() == []
    assert "waiting for a yes/no answer" in caplog.text
