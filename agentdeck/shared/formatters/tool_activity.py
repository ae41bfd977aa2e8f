"""One-line activity notices synthesized from agent protocol messages.

Both execution strategies turn tool calls, turn results and the init
handshake into short human-readable lines that go through the normal
output path. Adding a new tool notice requires only a decorated
function:

    @activity_formatter("MyTool")
    def _my_tool(args):
        return f"🧩 {args.get('thing', '')}"
"""
from __future__ import annotations

from typing import Any, Callable

_FORMATTERS: dict[str, Callable[[dict], str]] = {}
_TOOL_NAME_ALIASES: dict[str, str] = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "multiedit": "MultiEdit",
    "bash": "Bash",
    "grep": "Grep",
    "glob": "Glob",
    "task": "Task",
}

# Tools whose invocation mutates a file and must be approved first.
FILE_MUTATING_TOOLS = frozenset({"Edit", "MultiEdit", "Write"})

COMMAND_PREVIEW_CHARS = 50


def activity_formatter(name: str):
    """Decorator to register a notice formatter for a tool name."""

    def decorator(fn: Callable[[dict], str]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def normalize_tool_name(name: str) -> str:
    """Strip an MCP server prefix and map lowercase aliases."""
    if name.startswith("mcp__") and name.count("__") >= 2:
        name = name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(name.lower(), name)


def is_file_mutating(name: str) -> bool:
    return normalize_tool_name(name) in FILE_MUTATING_TOOLS


def format_tool_activity(name: str, args: dict[str, Any] | None) -> str:
    """Return e.g. ``🔧 Read 📖 src/app.py``."""
    args = args if isinstance(args, dict) else {}
    formatter = _FORMATTERS.get(name) or _FORMATTERS.get(normalize_tool_name(name))
    notice = f"🔧 {name}"
    if formatter is None:
        return notice
    detail = formatter(args)
    return f"{notice} {detail}" if detail else notice


@activity_formatter("Read")
def _read(args: dict) -> str:
    return f"📖 {args.get('file_path', '')}"


@activity_formatter("Write")
def _write(args: dict) -> str:
    return f"✍️ {args.get('file_path', '')}"


@activity_formatter("Edit")
def _edit(args: dict) -> str:
    return f"✏️ {args.get('file_path', '')}"


@activity_formatter("MultiEdit")
def _multi_edit(args: dict) -> str:
    edits = args.get("edits") or []
    return f"✏️ {args.get('file_path', '')} ({len(edits)} edits)"


@activity_formatter("Bash")
def _bash(args: dict) -> str:
    command = str(args.get("command", "") or "")
    return f"💻 {command[:COMMAND_PREVIEW_CHARS]}"


@activity_formatter("Grep")
def _grep(args: dict) -> str:
    return f"🔍 \"{args.get('pattern', '')}\""


@activity_formatter("Glob")
def _glob(args: dict) -> str:
    return f"📂 \"{args.get('pattern', '')}\""


@activity_formatter("Task")
def _task(args: dict) -> str:
    return f"🤖 {args.get('description', '')}"


def format_init(version: str | None, model: str | None) -> str:
    return f"🚀 Claude {version or 'unknown'} initialized ({model or 'unknown'})"


def format_result(subtype: str | None, num_turns: int | None) -> str:
    if subtype == "success":
        return f"✅ Task completed ({num_turns or 0} turns)"
    return f"❌ Error: {subtype or 'unknown'}"


def format_permission_denials(denials: list[Any] | None) -> str | None:
    """Summarize tool calls that were refused during a turn."""
    if not denials:
        return None
    parts = []
    for d in denials:
        if isinstance(d, dict):
            parts.append(f"{d.get('tool_name', '?')} ({d.get('tool_use_id', '?')})")
        else:
            parts.append(
                f"{getattr(d, 'tool_name', '?')} ({getattr(d, 'tool_use_id', '?')})"
            )
    return f"⚠️ Permission denials: {', '.join(parts)}"


def edit_preview(name: str, args: dict[str, Any]) -> tuple[str, str, str]:
    """Return (file_path, old_string, new_string) for a mutating tool call."""
    tool = normalize_tool_name(name)
    file_path = str(args.get("file_path", "") or "")
    if tool == "Write":
        return file_path, "", str(args.get("content", "") or "")
    if tool == "MultiEdit":
        edits = [e for e in (args.get("edits") or []) if isinstance(e, dict)]
        old = "\n".join(str(e.get("old_string", "")) for e in edits)
        new = "\n".join(str(e.get("new_string", "")) for e in edits)
        return file_path, old, new
    return (
        file_path,
        str(args.get("old_string", "") or ""),
        str(args.get("new_string", "") or ""),
    )
