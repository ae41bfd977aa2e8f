"""AgentDeck CLI - main application entry point."""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _log_runtime_compatibility(claude_command: str) -> None:
    """Log SDK/CLI runtime versions."""
    logger = logging.getLogger(__name__)
    sdk_version = "unknown"
    try:
        from importlib.metadata import version

        sdk_version = version("claude-agent-sdk")
    except Exception:
        logger.debug("Could not resolve claude-agent-sdk version", exc_info=True)

    cli_version = "unknown"
    try:
        out = subprocess.check_output(
            [claude_command, "--version"], text=True, stderr=subprocess.STDOUT
        ).strip()
        match = re.search(r"(\d+\.\d+\.\d+)", out)
        cli_version = match.group(1) if match else out
    except Exception:
        logger.debug("Could not resolve claude CLI version", exc_info=True)

    logger.info(
        "Runtime versions: claude-agent-sdk=%s claude-cli=%s",
        sdk_version,
        cli_version,
    )


def configure_logging(log_file: Path, log_level: str) -> None:
    """Rotating file log plus stderr, shared by every module logger."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)


def load_config(args):
    """Defaults, then DECK_* env vars, then the YAML file, then flags."""
    from agentdeck.engine.config import DeckConfig
    from agentdeck.engine.yaml_config import load_yaml_config

    config = DeckConfig.from_env()
    config_path = args.config
    if not config_path:
        candidate = Path.cwd() / "agentdeck.yaml"
        if candidate.exists():
            config_path = str(candidate)
    if config_path:
        config = load_yaml_config(config_path, base=config)
    return config.with_overrides(
        host=args.host,
        port=args.port,
        data_dir=args.data_dir,
        execution_strategy=args.strategy,
        model=args.model,
        log_level="DEBUG" if args.verbose else None,
    )


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="AgentDeck - local dashboard for supervising coding agents",
    )
    parser.add_argument("--host", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 4001)")
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Where sessions, changes, output logs and server logs are kept",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agentdeck.yaml if present)",
    )
    parser.add_argument(
        "--strategy", choices=["sdk", "cli"],
        help="Run agents in-process via the SDK or as claude subprocesses",
    )
    parser.add_argument("--model", help="Model passed to every agent")
    parser.add_argument(
        "--list", action="store_true",
        help="List persisted sessions and exit",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(2)

    if args.list:
        from agentdeck.shared.services.persistence import DeckPersistence

        records = DeckPersistence(config.data_path).load_session_records()
        if not records:
            print("No saved sessions.")
        else:
            for rec in records:
                print(
                    f"  {rec.get('id', '?')}  {rec.get('name', '?')} "
                    f"({rec.get('role', '?')})  session={rec.get('sessionId', '?')} "
                    f"status={rec.get('status', '?')}"
                )
        sys.exit(0)

    from agentdeck.server.server import DeckServer

    configure_logging(config.log_file, config.log_level)
    logging.getLogger(__name__).info(
        "Starting AgentDeck server cwd=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.port,
        args.config or "<none>",
        config.log_file,
    )
    _log_runtime_compatibility(config.claude_command)

    server = DeckServer(config)
    asyncio.run(server.start())
    sys.exit(0)


if __name__ == "__main__":
    main()
