"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via DECK_* env vars,
a YAML file (see yaml_config.py) or command-line flags.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

logger = logging.getLogger(__name__)

EXECUTION_STRATEGIES = ("sdk", "cli")


def _default_data_dir() -> str:
    return str(Path.home() / ".agentdeck")


@dataclass
class DeckConfig:
    """Dashboard server and session engine configuration."""

    # HTTP surface
    host: str = "127.0.0.1"
    port: int = 4001

    # Where agents.json, changes.json, outputs/ and logs/ live
    data_dir: str = field(default_factory=_default_data_dir)

    # Agent execution: "sdk" runs in-process through claude_agent_sdk,
    # "cli" drives a `claude` subprocess over stream-json.
    execution_strategy: str = "sdk"
    model: str = "claude-sonnet-4-5"
    claude_command: str = "claude"

    # Per-agent in-memory output history (FIFO eviction)
    output_buffer_size: int = 1000
    # How long a file-mutating tool call waits for a human before it is
    # denied. Set to 0 (or a negative value) to wait forever.
    approval_timeout_seconds: float = 300.0
    # Grace period between SIGTERM and SIGKILL for CLI subprocesses
    stop_grace_seconds: float = 5.0
    # Exits with a non-zero code this soon after start get an install hint
    crash_window_seconds: float = 5.0

    # Queue sizes
    event_queue_size: int = 5000
    observer_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def log_file(self) -> Path:
        return self.data_path / "logs" / "agentdeck-server.log"

    def with_overrides(self, **overrides) -> DeckConfig:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        if self.execution_strategy not in EXECUTION_STRATEGIES:
            raise ValueError(
                f"Unknown execution strategy '{self.execution_strategy}'. "
                f"Expected one of: {', '.join(EXECUTION_STRATEGIES)}"
            )
        if self.output_buffer_size <= 0:
            raise ValueError("output_buffer_size must be greater than 0")

    @classmethod
    def from_env(cls) -> DeckConfig:
        """Load configuration from DECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("DECK_")
        }
        if deck_vars:
            logger.info(
                "DeckConfig.from_env: DECK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(deck_vars.items())),
            )
        else:
            logger.debug("DeckConfig.from_env: no DECK_* env vars set, using defaults")

        config = cls(
            host=os.getenv("DECK_HOST", cls.host),
            port=int(os.getenv("DECK_PORT", str(cls.port))),
            data_dir=os.getenv("DECK_DATA_DIR") or _default_data_dir(),
            execution_strategy=os.getenv(
                "DECK_STRATEGY", cls.execution_strategy
            ).lower(),
            model=os.getenv("DECK_MODEL", cls.model),
            claude_command=os.getenv("DECK_CLAUDE_COMMAND", cls.claude_command),
            output_buffer_size=int(os.getenv(
                "DECK_OUTPUT_BUFFER_SIZE", str(cls.output_buffer_size)
            )),
            approval_timeout_seconds=float(os.getenv(
                "DECK_APPROVAL_TIMEOUT", str(cls.approval_timeout_seconds)
            )),
            stop_grace_seconds=float(os.getenv(
                "DECK_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            crash_window_seconds=float(os.getenv(
                "DECK_CRASH_WINDOW", str(cls.crash_window_seconds)
            )),
            event_queue_size=int(os.getenv(
                "DECK_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            observer_queue_size=int(os.getenv(
                "DECK_OBSERVER_QUEUE_SIZE", str(cls.observer_queue_size)
            )),
            log_level=os.getenv("DECK_LOG_LEVEL", cls.log_level),
        )
        config.validate()
        logger.info(
            "DeckConfig.from_env: strategy=%s model=%s data_dir=%s log_level=%s",
            config.execution_strategy, config.model,
            config.data_dir, config.log_level,
        )
        return config
