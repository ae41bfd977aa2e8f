from __future__ import annotations

import pytest

from agentdeck.adapters.event_bus import EventBus
from agentdeck.engine.config import DeckConfig
from agentdeck.engine.errors import ProviderNotAvailableError
from agentdeck.engine.models import AgentConfig
from agentdeck.engine.providers import (
    ClaudeCLIProvider,
    ClaudeSDKProvider,
    build_provider,
    initial_prompt,
)


def test_builds_configured_strategy():
    bus = EventBus()
    sdk = build_provider(DeckConfig(execution_strategy="sdk"), bus)
    cli = build_provider(
        DeckConfig(execution_strategy="cli", claude_command="my-claude", approval_timeout_seconds=9),
        bus,
    )

    assert isinstance(sdk, ClaudeSDKProvider)
    assert isinstance(cli, ClaudeCLIProvider)
    assert cli.build_command()[0] == "my-claude"
    assert cli.gate.resolve("nothing", True).value == "not_found"


def test_unknown_strategy_is_rejected():
    with pytest.raises(ProviderNotAvailableError) as exc_info:
        build_provider(DeckConfig(execution_strategy="docker"), EventBus())
    assert exc_info.value.strategy == "docker"


def test_initial_prompt_sets_persona_and_scope():
    config = AgentConfig(
        id="agent-1", session_id="s", name="Ada", role="reviewer",
        work_dir="/repo", patterns=["src/**", "*.md"],
    )
    prompt = initial_prompt(config)

    assert prompt.startswith("You are Ada, a reviewer agent. Your working directory is /repo.")
    assert "src/**, *.md" in prompt
    assert "patterns" not in initial_prompt(AgentConfig(
        id="a", session_id="s", name="n", role="r", work_dir="/w",
    ))
