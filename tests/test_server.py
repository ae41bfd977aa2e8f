from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from agentdeck.engine.config import DeckConfig
from agentdeck.server.server import DeckServer

from fake_provider import FakeProvider

EDIT_TEXT = (
    "Edit src/app.py:\n"
    "@@ -1 +1 @@\n"
    "-x = 1\n"
    "+x = 2\n"
    "Do you want to make this edit?"
)


class TestDeckServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.work_dir = Path(self.tmpdir) / "project"
        self.work_dir.mkdir()
        self.deck = DeckServer(
            DeckConfig(data_dir=str(Path(self.tmpdir) / "state")),
            provider_factory=lambda bus: FakeProvider(bus),
        )
        return self.deck.app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    @property
    def provider(self) -> FakeProvider:
        return self.deck.manager.provider

    async def _start_agent(self, **overrides) -> dict:
        body = {
            "name": "Bot",
            "role": "dev",
            "workDir": str(self.work_dir),
            "patterns": ["**/*"],
        }
        body.update(overrides)
        resp = await self.client.post("/api/agents/start", json=body)
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        return data["agent"]

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["strategy"] == "fake"
        assert data["sessions"] == 0

    async def test_start_validates_body(self):
        resp = await self.client.post("/api/agents/start", json={"name": "Bot"})
        assert resp.status == 400
        assert "required" in (await resp.json())["error"]

        resp = await self.client.post("/api/agents/start", json={
            "name": "Bot", "role": "dev", "workDir": str(self.work_dir / "missing"),
        })
        assert resp.status == 400

        resp = await self.client.post(
            "/api/agents/start", data="{nope", headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

        resp = await self.client.post("/api/agents/start", json={
            "name": "Bot", "role": "dev", "workDir": str(self.work_dir), "sessionId": 42,
        })
        assert resp.status == 400
        assert "sessionId" in (await resp.json())["error"]
        assert self.deck.manager.list_sessions() == []

    async def test_start_list_and_stop(self):
        agent = await self._start_agent()
        assert agent["status"] == "running"
        assert agent["workDir"] == str(self.work_dir)

        resp = await self.client.get("/api/agents")
        agents = (await resp.json())["agents"]
        assert [a["id"] for a in agents] == [agent["id"]]

        resp = await self.client.post("/api/agents/stop", json={"agentId": agent["id"]})
        assert resp.status == 200
        resp = await self.client.post("/api/agents/stop", json={"agentId": agent["id"]})
        assert resp.status == 200
        resp = await self.client.post("/api/agents/stop", json={"agentId": "agent-nope"})
        assert resp.status == 404
        assert (await resp.json())["status"] == "not_found"
        resp = await self.client.post("/api/agents/stop", json={})
        assert resp.status == 400

    async def test_output_is_buffered_and_logged(self):
        agent = await self._start_agent()
        await self.provider.output(agent["id"], "Hello, I am Bot")
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)

        resp = await self.client.get(f"/api/agents/{agent['id']}/output")
        assert (await resp.json())["output"] == ["Hello, I am Bot"]

        await self.provider.output(agent["id"], "second")
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)
        resp = await self.client.get(f"/api/agents/{agent['id']}/output?limit=1")
        assert (await resp.json())["output"] == ["second"]
        resp = await self.client.get(f"/api/agents/{agent['id']}/output?limit=x")
        assert resp.status == 400

        resp = await self.client.get(f"/api/sessions/{agent['sessionId']}/output?limit=5")
        entries = (await resp.json())["entries"]
        assert [e["output"] for e in entries] == ["Hello, I am Bot", "second"]

        resp = await self.client.get("/api/agents/agent-nope/output")
        assert resp.status == 404

    async def test_message_and_interrupt(self):
        agent = await self._start_agent()
        resp = await self.client.post(
            f"/api/agents/{agent['id']}/message", json={"message": "add tests"},
        )
        assert resp.status == 200
        assert self.provider.inputs == [(agent["id"], "add tests")]

        resp = await self.client.post(f"/api/agents/{agent['id']}/message", json={})
        assert resp.status == 400

        resp = await self.client.post("/api/agents/interrupt", json={"agentId": agent["id"]})
        assert resp.status == 200
        assert self.provider.interrupts == [agent["id"]]

    async def test_message_to_stopped_agent_conflicts(self):
        agent = await self._start_agent()
        await self.client.post("/api/agents/stop", json={"agentId": agent["id"]})

        resp = await self.client.post(
            f"/api/agents/{agent['id']}/message", json={"message": "hi"},
        )
        assert resp.status == 409
        assert (await resp.json())["status"] == "failed"

    async def test_restart_and_delete(self):
        agent = await self._start_agent()
        resp = await self.client.post(f"/api/agents/{agent['id']}/restart")
        assert resp.status == 200
        restarted = (await resp.json())["agent"]
        assert restarted["sessionId"] == agent["sessionId"]
        assert restarted["id"] != agent["id"]

        resp = await self.client.delete(f"/api/agents/{agent['id']}")
        assert resp.status == 200
        resp = await self.client.delete(f"/api/agents/{agent['id']}")
        assert resp.status == 404

    async def test_edit_approval_round_trip(self):
        agent = await self._start_agent()
        future = await self.provider.request_edit(agent["id"], "toolu_1", "a.ts")
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)

        url = f"/api/agents/{agent['id']}/edit/approve"
        resp = await self.client.post(url, json={"toolUseId": "toolu_1"})
        assert resp.status == 200
        assert (await future).value == "approved"

        resp = await self.client.post(url, json={"toolUseId": "toolu_1"})
        assert resp.status == 404
        resp = await self.client.post(url, json={})
        assert resp.status == 400

    async def test_edit_rejection(self):
        agent = await self._start_agent()
        future = await self.provider.request_edit(agent["id"], "toolu_2", "b.ts")

        resp = await self.client.post(
            f"/api/agents/{agent['id']}/edit/reject", json={"toolUseId": "toolu_2"},
        )
        assert resp.status == 200
        assert (await future).value == "denied"

    async def test_change_accept_flow(self):
        agent = await self._start_agent()
        await self.provider.output(agent["id"], EDIT_TEXT)
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)

        resp = await self.client.get("/api/changes?status=pending")
        changes = (await resp.json())["changes"]
        assert len(changes) == 1
        change_id = changes[0]["id"]
        assert changes[0]["filePath"] == "src/app.py"

        resp = await self.client.post(f"/api/changes/{change_id}/accept")
        assert resp.status == 200
        assert (await resp.json())["change"]["status"] == "accepted"
        assert self.provider.inputs[-1] == (agent["id"], "y")

        resp = await self.client.post(f"/api/changes/{change_id}/decline")
        assert resp.status == 409

        resp = await self.client.get(f"/api/changes/{change_id}")
        assert (await resp.json())["change"]["status"] == "accepted"

    async def test_change_decline_rolls_back_on_delivery_failure(self):
        agent = await self._start_agent()
        await self.provider.output(agent["id"], EDIT_TEXT)
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)
        change_id = self.deck.manager.list_changes()[0].id
        self.provider.accept_input = False

        resp = await self.client.post(f"/api/changes/{change_id}/decline")
        assert resp.status == 409
        assert (await resp.json())["change"]["status"] == "pending"

    async def test_change_instruction_and_unknown_ids(self):
        agent = await self._start_agent()
        await self.provider.output(agent["id"], EDIT_TEXT)
        await asyncio.wait_for(self.deck.manager.wait_idle(), timeout=5.0)
        change_id = self.deck.manager.list_changes()[0].id

        resp = await self.client.post(
            f"/api/changes/{change_id}/instruction", json={"instruction": "rename it"},
        )
        assert resp.status == 200
        assert self.provider.inputs[-1] == (agent["id"], "rename it")

        resp = await self.client.post("/api/changes/change-nope/accept")
        assert resp.status == 404
        resp = await self.client.get("/api/changes/change-nope")
        assert resp.status == 404
        resp = await self.client.get("/api/changes?status=bogus")
        assert resp.status == 400

    async def test_websocket_streams_events(self):
        ws = await self.client.ws_connect("/ws")
        hello = await ws.receive_json(timeout=5.0)
        assert hello["type"] == "connected"

        await ws.send_str("ping")
        assert (await ws.receive(timeout=5.0)).data == "pong"

        agent = await self._start_agent()
        event = await ws.receive_json(timeout=5.0)
        assert event["type"] == "session_started"
        assert event["data"]["session"]["id"] == agent["id"]
        await ws.close()
