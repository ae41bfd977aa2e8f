"""Build the execution provider selected by configuration."""
from __future__ import annotations

import logging

from agentdeck.adapters.event_bus import EventBus
from agentdeck.engine.config import DeckConfig
from agentdeck.engine.errors import ProviderNotAvailableError

from .base import ExecutionProvider
from .claude_cli_provider import ClaudeCLIProvider
from .claude_sdk_provider import ClaudeSDKProvider

logger = logging.getLogger(__name__)


def build_provider(config: DeckConfig, event_bus: EventBus) -> ExecutionProvider:
    """Return the strategy named by ``config.execution_strategy``."""
    strategy = config.execution_strategy
    if strategy == "sdk":
        provider: ExecutionProvider = ClaudeSDKProvider(
            event_bus,
            model=config.model,
            approval_timeout=config.approval_timeout_seconds,
        )
    elif strategy == "cli":
        provider = ClaudeCLIProvider(
            event_bus,
            model=config.model,
            approval_timeout=config.approval_timeout_seconds,
            command=config.claude_command,
            stop_grace_seconds=config.stop_grace_seconds,
        )
    else:
        raise ProviderNotAvailableError(strategy, "unknown execution strategy")
    logger.info(
        "Execution provider: %s (available=%s)", provider.name, provider.is_available(),
    )
    return provider
