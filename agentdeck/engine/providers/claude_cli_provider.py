"""Execution through a ``claude`` CLI subprocess speaking stream-json.

The subprocess reads user messages as JSON lines on stdin and writes
protocol messages as JSON lines on stdout. Edit approvals are answered
by writing ``y`` or ``n`` as the next user message once the gate
settles; an interrupt is sent as a control request.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from agentdeck.adapters.event_bus import EventBus
from agentdeck.engine.errors import ApprovalCancelledError, DuplicateApprovalError
from agentdeck.engine.models import (
    AgentConfig,
    ApprovalDecision,
    EditPermissionRequest,
    OutputStream,
    new_tool_use_id,
)
from agentdeck.shared.formatters.tool_activity import (
    edit_preview,
    format_init,
    format_permission_denials,
    format_result,
    format_tool_activity,
    is_file_mutating,
)

from .base import APPROVE_ANSWER, DECLINE_ANSWER, ExecutionProvider, initial_prompt

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results; the asyncio default of
# 64 KiB is too small.
_READ_LIMIT = 16 * 1024 * 1024


@dataclass
class _CLIRun:
    config: AgentConfig
    process: Any
    started_at: float = field(default_factory=time.monotonic)
    reader: asyncio.Task | None = None
    watchers: set[asyncio.Task] = field(default_factory=set)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def user_message_line(text: str) -> bytes:
    payload = {"type": "user", "message": {"role": "user", "content": text}}
    return (json.dumps(payload) + "\n").encode("utf-8")


def interrupt_request_line() -> bytes:
    payload = {
        "type": "control_request",
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "request": {"subtype": "interrupt"},
    }
    return (json.dumps(payload) + "\n").encode("utf-8")


class ClaudeCLIProvider(ExecutionProvider):
    """Runs each agent as a ``claude --print`` stream-json subprocess."""

    def __init__(
        self,
        event_bus: EventBus,
        *,
        model: str | None = None,
        approval_timeout: float = 300.0,
        command: str = "claude",
        stop_grace_seconds: float = 5.0,
    ) -> None:
        super().__init__(event_bus, model=model, approval_timeout=approval_timeout)
        self._command = command
        self._stop_grace = stop_grace_seconds
        self._runs: dict[str, _CLIRun] = {}
        self._spawning: set[str] = set()

    @property
    def name(self) -> str:
        return "cli"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def is_active(self, agent_id: str) -> bool:
        run = self._runs.get(agent_id)
        return run is not None and run.process.returncode is None

    def active_agents(self) -> list[str]:
        return [a for a in self._runs if self.is_active(a)]

    def process_id(self, agent_id: str) -> int | None:
        run = self._runs.get(agent_id)
        return run.process.pid if run is not None else None

    def build_command(self) -> list[str]:
        cmd = [
            self.resolve_command(self._command),
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
        ]
        if self._model:
            cmd.extend(["--model", self._model])
        return cmd

    async def start(self, config: AgentConfig) -> None:
        cmd = self.build_command()
        env = dict(os.environ)
        env.update({
            "AGENT_ID": config.id,
            "AGENT_NAME": config.name,
            "AGENT_ROLE": config.role,
        })
        # Refuse-to-nest guard in the CLI trips when the server itself
        # runs inside a Claude session.
        env.pop("CLAUDECODE", None)
        self._spawning.add(config.id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.work_dir,
                env=env,
                limit=_READ_LIMIT,
            )
        except FileNotFoundError:
            logger.error("CLI agent %s: '%s' not found", config.id[:12], cmd[0])
            await self._spawn_failed(
                config,
                f"[ERROR] '{cmd[0]}' CLI not found. Is Claude Code installed and on PATH?",
            )
            return
        except OSError as exc:
            logger.error("CLI agent %s failed to spawn: %s", config.id[:12], exc)
            await self._spawn_failed(config, f"[ERROR] {exc}")
            return
        finally:
            self._spawning.discard(config.id)

        if config.id in self._silenced:
            # stop() arrived while the subprocess was being created.
            logger.info(
                "CLI agent %s stopped during spawn; terminating pid=%s",
                config.id[:12], proc.pid,
            )
            await self._terminate(proc, config.id)
            self._release(config.id)
            return

        run = _CLIRun(config=config, process=proc)
        self._runs[config.id] = run
        logger.info(
            "CLI agent %s spawned pid=%s cwd=%s", config.id[:12], proc.pid, config.work_dir,
        )
        run.reader = asyncio.create_task(
            self._run(run), name=f"cli-agent-{config.id}",
        )
        await self._write(run, user_message_line(initial_prompt(config)))

    async def send_input(self, agent_id: str, text: str) -> bool:
        run = self._runs.get(agent_id)
        if run is None or not self.is_active(agent_id):
            return False
        return await self._write(run, user_message_line(text))

    async def interrupt(self, agent_id: str) -> bool:
        run = self._runs.get(agent_id)
        if run is None or not self.is_active(agent_id):
            return False
        ok = await self._write(run, interrupt_request_line())
        if ok:
            logger.info("CLI agent %s interrupt requested", agent_id[:12])
        return ok

    async def stop(self, agent_id: str) -> None:
        self._silenced.add(agent_id)
        self.gate.reject_agent(agent_id, "stopped")
        run = self._runs.pop(agent_id, None)
        if run is None:
            # A spawn in flight sees the silenced id and cleans up itself.
            if agent_id not in self._spawning:
                self._release(agent_id)
            return
        await self._terminate(run.process, agent_id)
        tasks = [t for t in [run.reader, *run.watchers] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._release(agent_id)
        logger.info("CLI agent %s stopped (rc=%s)", agent_id[:12], run.process.returncode)

    async def _terminate(self, proc: Any, agent_id: str) -> None:
        """SIGTERM, then SIGKILL once the grace period runs out."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning(
                "CLI agent %s did not exit within %.1fs; killing pid=%s",
                agent_id[:12], self._stop_grace, proc.pid,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    async def _spawn_failed(self, config: AgentConfig, message: str) -> None:
        await self._emit_output(config, message, OutputStream.STDERR)
        await self._emit_exit(config, 1)
        # Nothing runs for this agent now; forget a stop that raced the spawn.
        self._release(config.id)

    # ── Subprocess IO ──

    async def _write(self, run: _CLIRun, data: bytes) -> bool:
        stdin = run.process.stdin
        if stdin is None:
            return False
        async with run.write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning("CLI agent %s stdin closed: %s", run.config.id[:12], exc)
                return False
        return True

    async def _run(self, run: _CLIRun) -> None:
        cfg = run.config
        proc = run.process
        stderr_task = asyncio.create_task(self._pump_stderr(run))
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                try:
                    await self.handle_line(run, line)
                except Exception:
                    logger.exception(
                        "CLI agent %s failed to handle output line (skipped)", cfg.id[:12],
                    )
            await stderr_task
            code = await proc.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except Exception as exc:
            logger.exception("CLI agent %s reader failed", cfg.id[:12])
            stderr_task.cancel()
            await self._emit_output(cfg, f"[ERROR] {exc}", OutputStream.STDERR)
            await self._terminate(proc, cfg.id)
            code = 1
        logger.info("CLI agent %s exited rc=%s", cfg.id[:12], code)
        self.gate.reject_agent(cfg.id, "exited")
        for task in list(run.watchers):
            task.cancel()
        if self._runs.get(cfg.id) is run:
            del self._runs[cfg.id]
        await self._emit_exit(cfg, code)

    async def _pump_stderr(self, run: _CLIRun) -> None:
        while True:
            line = await run.process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            if text:
                await self._emit_output(run.config, f"[stderr] {text}", OutputStream.STDERR)

    async def handle_line(self, run: _CLIRun, raw: bytes | str) -> None:
        """Interpret one stdout line of the stream-json protocol."""
        cfg = run.config
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = text.strip()
        if not text:
            return
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("CLI agent %s non-JSON output (ignored): %s", cfg.id[:12], text[:100])
            return
        if not isinstance(parsed, dict):
            return

        msg_type = parsed.get("type")
        if msg_type == "assistant":
            message = parsed.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(content, list):
                logger.debug("CLI agent %s assistant message without content list", cfg.id[:12])
                return
            texts = [
                str(item.get("text", ""))
                for item in content
                if isinstance(item, dict) and item.get("type") == "text"
            ]
            joined = "\n".join(t for t in texts if t)
            if joined:
                await self._emit_output(cfg, joined)
            for item in content:
                if isinstance(item, dict) and item.get("type") == "tool_use":
                    await self._handle_tool_use(run, item)
        elif msg_type == "result":
            await self._emit_output(
                cfg, format_result(parsed.get("subtype"), parsed.get("num_turns")),
            )
            denials = format_permission_denials(parsed.get("permission_denials"))
            if denials:
                await self._emit_output(cfg, denials)
        elif msg_type == "system" and parsed.get("subtype") == "init":
            await self._emit_output(
                cfg, format_init(parsed.get("claude_code_version"), parsed.get("model")),
            )
        else:
            logger.debug(
                "CLI agent %s internal message type=%s", cfg.id[:12], msg_type,
            )

    async def _handle_tool_use(self, run: _CLIRun, item: dict[str, Any]) -> None:
        cfg = run.config
        name = str(item.get("name", ""))
        args = item.get("input") if isinstance(item.get("input"), dict) else {}
        logger.info(
            "CLI agent %s tool_use id=%s name=%s",
            cfg.id[:12], str(item.get("id", ""))[:12], name,
        )
        await self._emit_output(cfg, format_tool_activity(name, args))
        if not is_file_mutating(name):
            return

        tool_use_id = str(item.get("id") or new_tool_use_id(cfg.id))
        file_path, old, new = edit_preview(name, args)
        try:
            future = self.gate.request(tool_use_id, cfg.id)
        except DuplicateApprovalError:
            logger.warning("CLI agent %s repeated tool_use %s ignored", cfg.id[:12], tool_use_id)
            return
        await self._emit_permission(EditPermissionRequest(
            tool_use_id=tool_use_id,
            agent_id=cfg.id,
            session_id=cfg.session_id,
            file_path=file_path,
            old_string=old,
            new_string=new,
            tool_name=name,
        ))
        task = asyncio.create_task(self._answer_when_decided(run, tool_use_id, future))
        run.watchers.add(task)
        task.add_done_callback(run.watchers.discard)

    async def _answer_when_decided(
        self, run: _CLIRun, tool_use_id: str, future: asyncio.Future,
    ) -> None:
        try:
            decision = await future
        except ApprovalCancelledError:
            return
        answer = APPROVE_ANSWER if decision == ApprovalDecision.APPROVED else DECLINE_ANSWER
        logger.info(
            "CLI agent %s edit %s -> %s (%s)",
            run.config.id[:12], tool_use_id, answer, decision.value,
        )
        await self._write(run, user_message_line(answer))
