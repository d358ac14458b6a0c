"""Loop Guards - advisory nudges computed from the transcript.

A guard is a plain function ``(transcript) -> nudge text | None`` evaluated
after every dispatch. Guards only ADD guidance for the next model turn.

INVARIANTS:
1. Guards are read-only over the transcript
2. Guards never touch the gate, the resolver or any tool
3. A guard only fires on the most recent tool result, so one event nudges once
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from .errors import ResultKind
from .state import Message, Role

Guard = Callable[[Sequence[Message]], Optional[str]]

READ_TOOLS = ("read_file", "list_files")
EDIT_FAILURE_KINDS = (ResultKind.REJECTED, ResultKind.VALIDATION_FAILED, ResultKind.INCOMPLETE_CONTENT)


def _recent_tool_messages(transcript: Sequence[Message], window: int) -> list[Message]:
    tools = [m for m in transcript if m.role == Role.TOOL]
    return tools[-window:]


def stuck_reading(window: int = 6, threshold: int = 3) -> Guard:
    """Same read tool on the same path ``threshold`` times within ``window`` results."""

    def guard(transcript: Sequence[Message]) -> str | None:
        recent = _recent_tool_messages(transcript, window)
        if not recent:
            return None
        last = recent[-1]
        if last.tool_name not in READ_TOOLS or last.result_kind != ResultKind.OK:
            return None
        repeats = sum(1 for m in recent if m.tool_name == last.tool_name and m.tool_path == last.tool_path)
        if repeats < threshold:
            return None
        return (
            f"You have called {last.tool_name} on '{last.tool_path}' {repeats} times recently. "
            f"The content has not changed. Stop re-reading and move on: propose_fix with the "
            f"complete corrected file, or get_status for the next step."
        )

    guard.__name__ = "stuck_reading"
    return guard


def stuck_editing(window: int = 6, threshold: int = 3) -> Guard:
    """Rejections or validation failures piling up within ``window`` results."""

    def guard(transcript: Sequence[Message]) -> str | None:
        recent = _recent_tool_messages(transcript, window)
        if not recent or recent[-1].result_kind not in EDIT_FAILURE_KINDS:
            return None
        failures = sum(1 for m in recent if m.result_kind in EDIT_FAILURE_KINDS)
        if failures < threshold:
            return None
        return (
            f"{failures} of your last {len(recent)} edits were rejected or failed validation. "
            f"Change approach: re-read the auditor rationale or get_audit_logs, use get_knowledge "
            f"for a reference pattern, or checkpoint_manager(load) to recover the last approved version."
        )

    guard.__name__ = "stuck_editing"
    return guard


def unapproved_write() -> Guard:
    """A write hit the approval gate."""

    def guard(transcript: Sequence[Message]) -> str | None:
        recent = _recent_tool_messages(transcript, 1)
        if not recent or recent[-1].result_kind != ResultKind.APPROVAL_REQUIRED:
            return None
        path = recent[-1].tool_path or "the file"
        return (
            f"Your write to '{path}' was blocked: it has no live approval. "
            f"Call propose_fix for '{path}' first, wait for APPROVED, then write_fix with the same content."
        )

    guard.__name__ = "unapproved_write"
    return guard


def default_guards() -> tuple[Guard, ...]:
    return (stuck_reading(), stuck_editing(), unapproved_write())
