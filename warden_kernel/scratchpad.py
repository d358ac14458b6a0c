"""Scratchpad - a markdown log of tool calls kept in the agent memory root.

The model can read it back through ``.agent_memory/scratchpad.md`` to recover
what it already tried. Only the kernel writes it.

INVARIANTS:
1. Append-only: one entry per dispatched tool call
2. Tool results are clipped before they are logged
3. Failure entries keep more text than routine ones
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from .state import ToolCall, ToolResult

logger = logging.getLogger(__name__)

SCRATCHPAD_NAME = "scratchpad.md"

MAX_RESULT_CHARS = 800
MAX_ENTRY_CHARS = 500
MAX_FAILURE_ENTRY_CHARS = 1500
FAILURE_MARKERS = ("REJECTED", "VALIDATION_FAILED", "ERROR")


def clip_entry(content: str) -> str:
    """Failures keep room for stack traces; everything else is cut short."""
    if any(marker in content for marker in FAILURE_MARKERS):
        return content[:MAX_FAILURE_ENTRY_CHARS]
    if len(content) > MAX_ENTRY_CHARS:
        return content[:MAX_ENTRY_CHARS] + "... [TRUNCATED]"
    return content


class Scratchpad:
    """Appends tool activity to ``<memory_root>/scratchpad.md``.

    Usage:
        scratchpad = Scratchpad(memory_root)
        scratchpad.record(call, result)
    """

    def __init__(self, memory_root: Path | str):
        self.path = Path(memory_root) / SCRATCHPAD_NAME
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, call: ToolCall, result: ToolResult) -> str:
        text = result.text
        if len(text) > MAX_RESULT_CHARS:
            text = text[:MAX_RESULT_CHARS] + "..."
        body = f"### TOOL: {call.name}\n**Path:** {result.path or 'N/A'}\n**Result:** {text}"
        return self.append(body)

    def append(self, content: str) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S")
        entry = f"\n### [{timestamp}] LOG ENTRY\n{clip_entry(content)}\n---\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry)
        logger.debug(f"Scratchpad entry appended to {self.path}")
        return entry
