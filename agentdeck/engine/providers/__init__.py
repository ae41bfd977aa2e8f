"""Execution strategies for agent sessions."""
from .base import ExecutionProvider, initial_prompt
from .claude_cli_provider import ClaudeCLIProvider
from .claude_sdk_provider import ClaudeSDKProvider
from .registry import build_provider

__all__ = [
    "ExecutionProvider",
    "initial_prompt",
    "ClaudeCLIProvider",
    "ClaudeSDKProvider",
    "build_provider",
]
