"""Best-effort extraction of proposed file edits from agent output.

The agent prints a diff followed by a confirmation prompt when it wants
to edit a file. This module recognises that shape; it does not try to
be a complete unified-diff parser.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

EDIT_PROMPT = "Do you want to make this edit"
CONFIRMATION_MARKERS = (EDIT_PROMPT, "(y/n)", "Accept this change?")

_EDIT_HEADER_RE = re.compile(r"Edit\s+(.+?):")
_DIFF_HEADER_RE = re.compile(r"^[+\-]{3}\s+(.+?)$")


@dataclass
class ParsedChange:
    file_path: str
    before: str
    after: str


def has_confirmation_prompt(text: str) -> bool:
    """True when the text ends a turn waiting for a yes/no answer."""
    return any(marker in text for marker in CONFIRMATION_MARKERS)


def parse_change(text: str) -> ParsedChange | None:
    """Return the proposed edit in *text*, or None when there is none."""
    if EDIT_PROMPT not in text:
        return None
    lines = text.split("\n")
    file_path = _find_file_path(lines)
    if not file_path:
        logger.debug("Edit prompt seen but no file path found")
        return None
    before, after = _split_hunks(lines)
    return ParsedChange(file_path=file_path, before=before, after=after)


def _find_file_path(lines: list[str]) -> str:
    # An "Edit <path>:" header wins over diff headers wherever it appears.
    header_path = ""
    for line in lines:
        m = _EDIT_HEADER_RE.search(line)
        if m:
            return m.group(1).strip()
        if not header_path:
            m = _DIFF_HEADER_RE.match(line)
            if m:
                header_path = m.group(1).strip()
    return header_path


def _split_hunks(lines: list[str]) -> tuple[str, str]:
    before: list[str] = []
    after: list[str] = []
    in_diff = False
    for line in lines:
        if line.startswith("@@"):
            in_diff = True
            continue
        if not in_diff:
            continue
        if EDIT_PROMPT in line:
            break
        if line.startswith("-") and not line.startswith("---"):
            before.append(line[1:])
        elif line.startswith("+") and not line.startswith("+++"):
            after.append(line[1:])
        elif line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        else:
            context = line[1:] if line.startswith(" ") else line
            before.append(context)
            after.append(context)
    return "\n".join(before), "\n".join(after)


class ChangeParser:
    """Callable wrapper so the manager can take a replaceable extractor."""

    def parse(self, text: str) -> ParsedChange | None:
        try:
            return parse_change(text)
        except Exception:
            logger.exception("Failed to parse change proposal")
            return None
