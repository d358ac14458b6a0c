"""Session State - transcript types and the per-session context.

One ``SessionContext`` is built per remediation session (one target file, one
vulnerability) and passed explicitly through every component. There are no
process-wide singletons.

INVARIANT: The transcript is append-only; order is the only causal record.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ResultKind


class Role(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SessionStatus(Enum):
    """Kernel state machine: INIT -> RUNNING -> terminal."""

    INIT = "init"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    BUDGET_EXHAUSTED = "budget_exhausted"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.SUCCESS, SessionStatus.FAILURE, SessionStatus.BUDGET_EXHAUSTED)


@dataclass(frozen=True)
class ToolCall:
    """Untrusted tool invocation emitted by the model."""

    id: str
    name: str
    raw_arguments: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass(frozen=True)
class ToolResult:
    """Exactly one per ToolCall, referencing it by id."""

    tool_call_id: str
    text: str
    ok: bool
    kind: ResultKind = ResultKind.OK
    tool_name: str = ""
    path: str | None = None


@dataclass(frozen=True)
class ToolOutput:
    """Handler result before it is bound to a call id."""

    text: str
    ok: bool = True
    kind: ResultKind = ResultKind.OK
    path: str | None = None

    def bind(self, call: ToolCall) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id,
            text=self.text,
            ok=self.ok,
            kind=self.kind,
            tool_name=call.name,
            path=self.path,
        )


@dataclass(frozen=True)
class Message:
    """One transcript entry."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    # Structured metadata for tool messages (never sent to the model)
    tool_name: str | None = None
    tool_path: str | None = None
    result_kind: ResultKind | None = None
    nudge: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> Message:
        return cls(
            role=Role.TOOL,
            content=result.text,
            tool_call_id=result.tool_call_id,
            tool_name=result.tool_name,
            tool_path=result.path,
            result_kind=result.kind,
        )

    def to_dict(self) -> dict[str, Any]:
        """Chat-completions wire form."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    def to_record(self) -> dict[str, Any]:
        """Full form for the session ledger."""
        record = self.to_dict()
        record.update({
            "tool_name": self.tool_name,
            "tool_path": self.tool_path,
            "result_kind": self.result_kind.value if self.result_kind else None,
            "nudge": self.nudge,
            "timestamp": self.timestamp,
        })
        return record

    def to_json(self) -> str:
        return json.dumps(self.to_record(), sort_keys=True)


@dataclass
class SessionContext:
    """Everything one session owns.

    Built once at session start, torn down with ``close()`` at session end.
    """

    task_id: str
    target_path: str
    vulnerability: str
    max_steps: int
    transcript: list[Message] = field(default_factory=list)
    status: SessionStatus = SessionStatus.INIT
    step_index: int = 0
    completion_reason: str = ""
    closed: bool = False

    def append(self, message: Message) -> Message:
        if self.closed:
            raise RuntimeError(f"Session {self.task_id} is closed")
        self.transcript.append(message)
        return message

    def tool_messages(self) -> list[Message]:
        return [m for m in self.transcript if m.role == Role.TOOL]

    def transition(self, status: SessionStatus, reason: str = "") -> None:
        if self.status.terminal:
            raise RuntimeError(f"Session already terminal: {self.status.value}")
        self.status = status
        if reason:
            self.completion_reason = reason

    def close(self) -> None:
        self.closed = True
