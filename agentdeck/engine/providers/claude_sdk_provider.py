"""In-process execution through the Claude Agent SDK.

Each agent gets a ClaudeSDKClient and a background task that feeds it
user messages one at a time from a FIFO inbox. File-mutating tools are
held in ``can_use_tool`` until the edit permission gate settles.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from agentdeck.adapters.event_bus import EventBus
from agentdeck.engine.errors import ApprovalCancelledError
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

from .base import ExecutionProvider, initial_prompt

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "User denied permission for this edit"
TIMEOUT_MESSAGE = "Approval timeout: no decision was made for this edit in time"
STOPPED_MESSAGE = "Agent stopped before the edit was approved"


def _default_client_factory(options: Any) -> Any:
    from claude_agent_sdk import ClaudeSDKClient

    return ClaudeSDKClient(options=options)


@dataclass
class _SDKRun:
    config: AgentConfig
    inbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    client: Any = None
    busy: bool = False


class ClaudeSDKProvider(ExecutionProvider):
    """Runs agents through ``claude_agent_sdk.ClaudeSDKClient``."""

    def __init__(
        self,
        event_bus: EventBus,
        *,
        model: str | None = None,
        approval_timeout: float = 300.0,
        client_factory: Callable[[Any], Any] | None = None,
        options_factory: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(event_bus, model=model, approval_timeout=approval_timeout)
        self._client_factory = client_factory or _default_client_factory
        self._options_factory = options_factory
        self._runs: dict[str, _SDKRun] = {}

    @property
    def name(self) -> str:
        return "sdk"

    def is_active(self, agent_id: str) -> bool:
        run = self._runs.get(agent_id)
        return run is not None and run.task is not None and not run.task.done()

    def active_agents(self) -> list[str]:
        return [a for a in self._runs if self.is_active(a)]

    async def start(self, config: AgentConfig) -> None:
        run = _SDKRun(config=config)
        run.inbox.put_nowait(initial_prompt(config))
        self._runs[config.id] = run
        run.task = asyncio.create_task(
            self._run(run), name=f"sdk-agent-{config.id}",
        )
        logger.info(
            "SDK agent %s started name=%s cwd=%s model=%s",
            config.id[:12], config.name, config.work_dir, self._model,
        )

    async def send_input(self, agent_id: str, text: str) -> bool:
        run = self._runs.get(agent_id)
        if run is None or not self.is_active(agent_id):
            return False
        run.inbox.put_nowait(text)
        logger.debug("SDK agent %s queued input (%d chars)", agent_id[:12], len(text))
        return True

    async def interrupt(self, agent_id: str) -> bool:
        run = self._runs.get(agent_id)
        if run is None or not self.is_active(agent_id) or run.client is None:
            return False
        try:
            await run.client.interrupt()
        except Exception as exc:
            logger.warning("SDK agent %s interrupt failed: %s", agent_id[:12], exc)
            return False
        logger.info("SDK agent %s interrupted", agent_id[:12])
        return True

    async def stop(self, agent_id: str) -> None:
        self._silenced.add(agent_id)
        self.gate.reject_agent(agent_id, "stopped")
        run = self._runs.pop(agent_id, None)
        if run is None or run.task is None:
            self._release(agent_id)
            return
        if not run.task.done():
            run.task.cancel()
        try:
            await run.task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("SDK agent %s task failed during stop", agent_id[:12])
        self._release(agent_id)
        logger.info("SDK agent %s stopped", agent_id[:12])

    # ── Agent loop ──

    def _build_options(self, run: _SDKRun) -> Any:
        cfg = run.config

        def _capture_stderr(line: str) -> None:
            logger.debug("claude stderr [%s]: %s", cfg.id[:12], line.rstrip())

        async def _can_use_tool(tool_name: str, tool_input: dict, context: Any):
            return await self._check_permission(run, tool_name, tool_input, context)

        options_kwargs: dict[str, Any] = dict(
            cwd=cfg.work_dir,
            can_use_tool=_can_use_tool,
            stderr=_capture_stderr,
        )
        if self._model:
            options_kwargs["model"] = self._model
        if self._options_factory is not None:
            return self._options_factory(**options_kwargs)
        from claude_agent_sdk import ClaudeAgentOptions

        return ClaudeAgentOptions(**options_kwargs)

    async def _run(self, run: _SDKRun) -> None:
        cfg = run.config
        try:
            client = self._client_factory(self._build_options(run))
            run.client = client
            await client.connect()
            while True:
                text = await run.inbox.get()
                run.busy = True
                try:
                    await client.query(text)
                    async for message in client.receive_response():
                        await self._handle_message(run, message)
                finally:
                    run.busy = False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("SDK agent %s failed", cfg.id[:12])
            await self._emit_output(cfg, f"[ERROR] {exc}", OutputStream.STDERR)
            await self._emit_exit(cfg, 1)
            self.gate.reject_agent(cfg.id, "exited")
            self._runs.pop(cfg.id, None)
        finally:
            client = run.client
            run.client = None
            if client is not None:
                try:
                    await client.disconnect()
                except Exception as exc:
                    logger.debug("SDK agent %s disconnect failed: %s", cfg.id[:12], exc)

    async def _handle_message(self, run: _SDKRun, message: Any) -> None:
        cfg = run.config
        content = getattr(message, "content", None)
        if isinstance(content, list):
            for block in content:
                if hasattr(block, "text") and not hasattr(block, "thinking"):
                    await self._emit_output(cfg, block.text)
                elif hasattr(block, "name") and hasattr(block, "input"):
                    logger.info(
                        "SDK agent %s tool_use id=%s name=%s",
                        cfg.id[:12], str(getattr(block, "id", ""))[:12], block.name,
                    )
                    await self._emit_output(
                        cfg, format_tool_activity(block.name, block.input),
                    )
            return

        if hasattr(message, "num_turns"):
            await self._emit_output(
                cfg,
                format_result(getattr(message, "subtype", None), message.num_turns),
            )
            denials = format_permission_denials(
                getattr(message, "permission_denials", None)
            )
            if denials:
                await self._emit_output(cfg, denials)
            return

        if getattr(message, "subtype", None) == "init":
            data = getattr(message, "data", None) or {}
            await self._emit_output(
                cfg,
                format_init(data.get("claude_code_version"), data.get("model")),
            )

    async def _check_permission(
        self,
        run: _SDKRun,
        tool_name: str,
        tool_input: dict,
        context: Any,
    ):
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        if not is_file_mutating(tool_name):
            return PermissionResultAllow()

        cfg = run.config
        tool_use_id = getattr(context, "tool_use_id", None) or new_tool_use_id(cfg.id)
        file_path, old, new = edit_preview(tool_name, tool_input or {})
        request = EditPermissionRequest(
            tool_use_id=tool_use_id,
            agent_id=cfg.id,
            session_id=cfg.session_id,
            file_path=file_path,
            old_string=old,
            new_string=new,
            tool_name=tool_name,
        )
        future = self.gate.request(tool_use_id, cfg.id)
        await self._emit_permission(request)
        try:
            decision = await future
        except ApprovalCancelledError:
            return PermissionResultDeny(message=STOPPED_MESSAGE, interrupt=True)

        if decision == ApprovalDecision.APPROVED:
            logger.info("SDK agent %s edit approved: %s", cfg.id[:12], file_path)
            return PermissionResultAllow()
        if decision == ApprovalDecision.TIMED_OUT:
            return PermissionResultDeny(message=TIMEOUT_MESSAGE, interrupt=False)
        return PermissionResultDeny(message=DENIED_MESSAGE, interrupt=False)
