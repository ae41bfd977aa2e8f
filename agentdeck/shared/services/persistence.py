"""Dashboard state persistence.

Storage layout (under the configured data directory):
    agents.json                 session records, including the agent pid
    changes.json                change proposals
    outputs/{session_id}.jsonl  append-only output log per logical session

The JSON snapshots are rewritten atomically on every save. The output
logs are only ever appended to; their timestamps are strictly
increasing within one file.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from agentdeck.engine.models import now_ms
from agentdeck.shared.services.durable_write import append_jsonl, atomic_write_json

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


class DeckPersistence:
    """Load and save sessions, changes and output logs as JSON files."""

    def __init__(self, data_dir: Path | str) -> None:
        self._dir = Path(data_dir).expanduser()
        self._outputs_dir = self._dir / "outputs"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._last_output_ts: dict[str, int] = {}

    @property
    def data_dir(self) -> Path:
        return self._dir

    @property
    def agents_file(self) -> Path:
        return self._dir / "agents.json"

    @property
    def changes_file(self) -> Path:
        return self._dir / "changes.json"

    def output_file(self, session_id: str) -> Path:
        safe = _UNSAFE_NAME_RE.sub("_", session_id) or "_"
        return self._outputs_dir / f"{safe}.jsonl"

    # ── Snapshots ──

    def save_sessions(self, records: list[dict[str, Any]]) -> None:
        atomic_write_json(self.agents_file, records)

    def load_session_records(self) -> list[dict[str, Any]]:
        return self._load_list(self.agents_file)

    def save_changes(self, records: list[dict[str, Any]]) -> None:
        atomic_write_json(self.changes_file, records)

    def load_change_records(self) -> list[dict[str, Any]]:
        return self._load_list(self.changes_file)

    def _load_list(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read %s: %s", path, exc)
            return []
        if not isinstance(raw, list):
            logger.error("Ignoring %s: expected a JSON list, got %s", path, type(raw).__name__)
            return []
        records = []
        for i, item in enumerate(raw):
            if isinstance(item, dict):
                records.append(item)
            else:
                logger.warning("Skipping non-object record #%d in %s", i, path.name)
        return records

    # ── Output logs ──

    def append_output(
        self,
        session_id: str,
        agent_id: str,
        output: str,
        stream: str = "stdout",
    ) -> int:
        """Append one chunk to the session's log and return its timestamp."""
        path = self.output_file(session_id)
        last = self._last_output_ts.get(session_id)
        if last is None:
            last = self._read_last_timestamp(path)
        ts = max(now_ms(), last + 1)
        append_jsonl(path, {
            "timestamp": ts,
            "agentId": agent_id,
            "output": output,
            "type": stream,
        })
        self._last_output_ts[session_id] = ts
        return ts

    def read_output(
        self, session_id: str, limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return logged entries oldest first, optionally only the last *limit*."""
        entries = self._read_entries(self.output_file(session_id))
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    def _read_entries(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        entries: list[dict[str, Any]] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt line %d in %s", lineno, path.name)
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    def _read_last_timestamp(self, path: Path) -> int:
        last = 0
        for entry in self._read_entries(path):
            ts = entry.get("timestamp")
            if isinstance(ts, int) and ts > last:
                last = ts
        return last

