"""HTTP + SSE + WebSocket server for the agent dashboard.

Exposes a REST API over the SessionManager and streams observer events
to browsers over Server-Sent Events (/events) or a WebSocket (/ws).
Every JSON response carries a ``status`` string: ok, not_found, failed
or timeout.

Usage:
    agentdeck [--port PORT] [--strategy sdk|cli]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Callable

from aiohttp import WSMsgType, web

from agentdeck.adapters.broadcast import BroadcastFanout
from agentdeck.adapters.event_bus import EventBus
from agentdeck.engine.config import DeckConfig
from agentdeck.engine.models import ChangeStatus, CommandStatus
from agentdeck.engine.providers.base import ExecutionProvider
from agentdeck.engine.providers.registry import build_provider
from agentdeck.engine.session_manager import SessionManager
from agentdeck.shared.services.persistence import DeckPersistence

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[EventBus], ExecutionProvider]

_HTTP_STATUS: dict[CommandStatus, int] = {
    CommandStatus.OK: 200,
    CommandStatus.NOT_FOUND: 404,
    CommandStatus.FAILED: 409,
    CommandStatus.TIMEOUT: 408,
}


def _status_response(status: CommandStatus, **extra: Any) -> web.Response:
    body = {"status": status.value}
    body.update(extra)
    return web.json_response(body, status=_HTTP_STATUS[status])


def _bad_request(message: str) -> web.Response:
    return web.json_response(
        {"status": CommandStatus.FAILED.value, "error": message}, status=400,
    )


def _query_limit(request: web.Request) -> tuple[int | None, web.Response | None]:
    raw = request.query.get("limit")
    if raw is None:
        return None, None
    try:
        return int(raw), None
    except ValueError:
        return None, _bad_request("limit must be an integer")


class DeckServer:
    """aiohttp application over one SessionManager.

    Thin adapter: session, change and output state lives in the
    SessionManager. This class only handles HTTP routing, observer
    transport and request validation.
    """

    def __init__(
        self,
        config: DeckConfig | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self._config = config or DeckConfig()
        self._started_at = time.time()
        self._bus = EventBus(maxsize=self._config.event_queue_size)
        self._fanout = BroadcastFanout(queue_size=self._config.observer_queue_size)
        if provider_factory is None:
            provider = build_provider(self._config, self._bus)
        else:
            provider = provider_factory(self._bus)
        self._persistence = DeckPersistence(self._config.data_path)
        self._manager = SessionManager(
            provider,
            self._bus,
            self._fanout,
            self._persistence,
            buffer_size=self._config.output_buffer_size,
            crash_window_seconds=self._config.crash_window_seconds,
        )
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def fanout(self) -> BroadcastFanout:
        return self._fanout

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-deck-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/ws", self._handle_ws)
        # Agents
        r.add_get("/api/agents", self._handle_list_agents)
        r.add_post("/api/agents/start", self._handle_start_agent)
        r.add_post("/api/agents/stop", self._handle_stop_agent)
        r.add_post("/api/agents/interrupt", self._handle_interrupt_agent)
        r.add_post("/api/agents/{agent_id}/restart", self._handle_restart_agent)
        r.add_delete("/api/agents/{agent_id}", self._handle_delete_agent)
        r.add_get("/api/agents/{agent_id}/output", self._handle_get_output)
        r.add_post("/api/agents/{agent_id}/message", self._handle_send_message)
        r.add_post("/api/agents/{agent_id}/edit/approve", self._handle_approve_edit)
        r.add_post("/api/agents/{agent_id}/edit/reject", self._handle_reject_edit)
        # Durable output history
        r.add_get("/api/sessions/{session_id}/output", self._handle_session_history)
        # Changes
        r.add_get("/api/changes", self._handle_list_changes)
        r.add_get("/api/changes/{change_id}", self._handle_get_change)
        r.add_post("/api/changes/{change_id}/accept", self._handle_accept_change)
        r.add_post("/api/changes/{change_id}/decline", self._handle_decline_change)
        r.add_post("/api/changes/{change_id}/instruction", self._handle_change_instruction)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._manager.recover()
        self._manager.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._manager.shutdown()

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()

        sys.stdout.write(json.dumps({"port": self._config.port}) + "\n")
        sys.stdout.flush()
        logger.info(
            "AgentDeck server listening on %s:%d strategy=%s data_dir=%s",
            self._config.host, self._config.port,
            self._manager.provider.name, self._config.data_path,
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    # ── Helpers ──

    async def _read_body(self, request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}, _bad_request("Invalid JSON body")
        if not isinstance(body, dict):
            return {}, _bad_request("JSON body must be an object")
        return body, None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        sessions = self._manager.list_sessions()
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "strategy": self._manager.provider.name,
            "sessions": len(sessions),
            "running": sum(1 for s in sessions if s.is_running),
            "observers": self._fanout.observer_count,
        })

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "agents": [s.to_public_dict() for s in self._manager.list_sessions()],
        })

    async def _handle_start_agent(self, request: web.Request) -> web.Response:
        body, err = await self._read_body(request)
        if err:
            return err
        name = str(body.get("name", "")).strip()
        role = str(body.get("role", "")).strip()
        work_dir = str(body.get("workDir", "")).strip()
        if not name or not role or not work_dir:
            return _bad_request("name, role and workDir are required")
        if not Path(work_dir).expanduser().is_dir():
            return _bad_request(f"workDir does not exist: {work_dir}")
        patterns = body.get("patterns") or []
        if not isinstance(patterns, list):
            return _bad_request("patterns must be a list")
        session_id = body.get("sessionId") or None
        if session_id is not None and not isinstance(session_id, str):
            return _bad_request("sessionId must be a string")
        session = await self._manager.start_session(
            name,
            role,
            str(Path(work_dir).expanduser()),
            [str(p) for p in patterns],
            session_id=session_id,
        )
        return _status_response(CommandStatus.OK, agent=session.to_public_dict())

    async def _agent_id_from_body(self, request: web.Request) -> tuple[str, web.Response | None]:
        body, err = await self._read_body(request)
        if err:
            return "", err
        agent_id = str(body.get("agentId", "")).strip()
        if not agent_id:
            return "", _bad_request("agentId is required")
        return agent_id, None

    async def _handle_stop_agent(self, request: web.Request) -> web.Response:
        agent_id, err = await self._agent_id_from_body(request)
        if err:
            return err
        status = await self._manager.stop_session(agent_id)
        return _status_response(status, agentId=agent_id)

    async def _handle_interrupt_agent(self, request: web.Request) -> web.Response:
        agent_id, err = await self._agent_id_from_body(request)
        if err:
            return err
        status = await self._manager.interrupt_session(agent_id)
        return _status_response(status, agentId=agent_id)

    async def _handle_restart_agent(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        status, session = await self._manager.restart_session(agent_id)
        if session is None:
            return _status_response(status, agentId=agent_id)
        return _status_response(status, agent=session.to_public_dict())

    async def _handle_delete_agent(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        status = await self._manager.delete_session(agent_id)
        return _status_response(status, agentId=agent_id)

    async def _handle_get_output(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        limit, err = _query_limit(request)
        if err:
            return err
        output = self._manager.get_output(agent_id, limit)
        if output is None:
            return _status_response(CommandStatus.NOT_FOUND, agentId=agent_id)
        return _status_response(CommandStatus.OK, agentId=agent_id, output=output)

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        body, err = await self._read_body(request)
        if err:
            return err
        message = str(body.get("message", ""))
        if not message.strip():
            return _bad_request("message is required")
        logger.info("Send message agent=%s len=%d", agent_id[:12], len(message))
        status = await self._manager.send_message(agent_id, message)
        return _status_response(status, agentId=agent_id)

    async def _resolve_edit(self, request: web.Request, approved: bool) -> web.Response:
        agent_id = request.match_info["agent_id"]
        body, err = await self._read_body(request)
        if err:
            return err
        tool_use_id = str(body.get("toolUseId", "")).strip()
        if not tool_use_id:
            return _bad_request("toolUseId is required")
        logger.info(
            "Resolve edit agent=%s tool_use=%s approved=%s",
            agent_id[:12], tool_use_id, approved,
        )
        if approved:
            status = await self._manager.approve_edit(agent_id, tool_use_id)
        else:
            status = await self._manager.reject_edit(agent_id, tool_use_id)
        return _status_response(status, agentId=agent_id, toolUseId=tool_use_id)

    async def _handle_approve_edit(self, request: web.Request) -> web.Response:
        return await self._resolve_edit(request, approved=True)

    async def _handle_reject_edit(self, request: web.Request) -> web.Response:
        return await self._resolve_edit(request, approved=False)

    async def _handle_session_history(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        limit, err = _query_limit(request)
        if err:
            return err
        entries = self._manager.get_session_history(session_id, limit)
        return _status_response(CommandStatus.OK, sessionId=session_id, entries=entries)

    async def _handle_list_changes(self, request: web.Request) -> web.Response:
        status_filter = request.query.get("status")
        status = None
        if status_filter:
            try:
                status = ChangeStatus(status_filter)
            except ValueError:
                return _bad_request(f"Unknown change status: {status_filter}")
        changes = self._manager.list_changes(status)
        return _status_response(CommandStatus.OK, changes=[c.to_dict() for c in changes])

    async def _handle_get_change(self, request: web.Request) -> web.Response:
        change_id = request.match_info["change_id"]
        change = self._manager.get_change(change_id)
        if change is None:
            return _status_response(CommandStatus.NOT_FOUND, changeId=change_id)
        return _status_response(CommandStatus.OK, change=change.to_dict())

    async def _decide(self, request: web.Request, accept: bool) -> web.Response:
        change_id = request.match_info["change_id"]
        if accept:
            status = await self._manager.accept_change(change_id)
        else:
            status = await self._manager.decline_change(change_id)
        change = self._manager.get_change(change_id)
        extra: dict[str, Any] = {"changeId": change_id}
        if change is not None:
            extra["change"] = change.to_dict()
        return _status_response(status, **extra)

    async def _handle_accept_change(self, request: web.Request) -> web.Response:
        return await self._decide(request, accept=True)

    async def _handle_decline_change(self, request: web.Request) -> web.Response:
        return await self._decide(request, accept=False)

    async def _handle_change_instruction(self, request: web.Request) -> web.Response:
        change_id = request.match_info["change_id"]
        body, err = await self._read_body(request)
        if err:
            return err
        instruction = str(body.get("instruction", ""))
        if not instruction.strip():
            return _bad_request("instruction is required")
        status = await self._manager.send_change_instruction(change_id, instruction)
        return _status_response(status, changeId=change_id)

    # ── Observer transports ──

    def _connected_payload(self) -> dict[str, Any]:
        return {"agents": [s.id for s in self._manager.list_sessions()]}

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue = self._fanout.subscribe()
        logger.info("SSE client connected req=%s", request.get("req_id", "unknown"))
        try:
            await response.write(
                f"event: connected\ndata: {json.dumps(self._connected_payload())}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._fanout.unsubscribe(queue)
            logger.info("SSE client disconnected req=%s", request.get("req_id", "unknown"))
        return response

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        queue = self._fanout.subscribe()
        logger.info("WebSocket client connected req=%s", request.get("req_id", "unknown"))
        await ws.send_json({"type": "connected", "data": self._connected_payload()})
        sender = asyncio.create_task(self._pump_ws(ws, queue))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            sender.cancel()
            self._fanout.unsubscribe(queue)
            logger.info("WebSocket client disconnected req=%s", request.get("req_id", "unknown"))
        return ws

    async def _pump_ws(self, ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
        while not ws.closed:
            msg = await queue.get()
            try:
                await ws.send_json({"type": msg["event"], "data": msg["data"]})
            except ConnectionResetError:
                return
