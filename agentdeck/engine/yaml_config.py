"""YAML configuration loader.

Values from the file override whatever config is passed in as the
base (usually ``DeckConfig.from_env()``). Unknown keys are logged and
ignored.

Example YAML:
    server:
      host: 127.0.0.1
      port: 4001

    engine:
      execution_strategy: cli
      model: claude-sonnet-4-5
      claude_command: claude
      approval_timeout_seconds: 300
      output_buffer_size: 1000

    persistence:
      data_dir: ~/.agentdeck
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import DeckConfig

logger = logging.getLogger(__name__)

_SECTION_KEYS: dict[str, set[str]] = {
    "server": {"host", "port", "log_level", "observer_queue_size"},
    "engine": {
        "execution_strategy",
        "model",
        "claude_command",
        "output_buffer_size",
        "approval_timeout_seconds",
        "stop_grace_seconds",
        "crash_window_seconds",
        "event_queue_size",
    },
    "persistence": {"data_dir"},
}


def _coerce(name: str, value: Any) -> Any:
    types = {f.name: f.type for f in fields(DeckConfig)}
    declared = str(types.get(name, "str"))
    if declared == "int":
        return int(value)
    if declared == "float":
        return float(value)
    return str(value)


def load_yaml_config(
    path: str | Path, base: DeckConfig | None = None,
) -> DeckConfig:
    """Load and parse a YAML config file on top of *base*."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    overrides: dict[str, Any] = {}
    for section, allowed in _SECTION_KEYS.items():
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            logger.warning("Ignoring non-mapping section '%s' in %s", section, path)
            continue
        for key, value in section_raw.items():
            if key not in allowed:
                logger.warning("Ignoring unknown key %s.%s in %s", section, key, path)
                continue
            if value is None:
                continue
            overrides[key] = _coerce(key, value)

    for section in raw:
        if section not in _SECTION_KEYS:
            logger.warning("Ignoring unknown section '%s' in %s", section, path)

    if "execution_strategy" in overrides:
        overrides["execution_strategy"] = overrides["execution_strategy"].lower()

    config = (base or DeckConfig()).with_overrides(**overrides)
    logger.info(
        "load_yaml_config: strategy=%s model=%s data_dir=%s",
        config.execution_strategy, config.model, config.data_dir,
    )
    return config
