"""Session Ledger - JSONL record of one remediation session.

The ledger records every transcript message, every dispatch and every nudge
for:
- Replay
- Dashboard inspection
- Failure analysis

INVARIANTS:
1. Every transcript append is logged
2. Ledger entries are immutable
3. The ledger is append-only
4. A completed session ends with exactly one completion entry
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .state import Message, SessionContext, ToolCall, ToolResult

logger = logging.getLogger(__name__)

LEDGER_DIR_NAME = "ledgers"


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable ledger entry."""

    entry_id: str
    step_index: int
    entry_type: str  # "start" | "message" | "dispatch" | "nudge" | "completion"
    data: tuple[tuple[str, Any], ...]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "step_index": self.step_index,
            "entry_type": self.entry_type,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        entry_data = data.get("data", {})
        if isinstance(entry_data, dict):
            entry_data = tuple(sorted(entry_data.items()))

        return cls(
            entry_id=data["entry_id"],
            step_index=data["step_index"],
            entry_type=data["entry_type"],
            data=entry_data,
            timestamp=data.get("timestamp", datetime.now(timezone.utc).isoformat()),
        )

    @classmethod
    def from_json(cls, json_str: str) -> LedgerEntry:
        return cls.from_dict(json.loads(json_str))


class SessionLedger:
    """Append-only JSONL ledger for one session.

    Usage:
        ledger = create_ledger(task_id, state_dir)
        ledger.record_start(ctx, model_name)
        ledger.record_message(ctx, message)
        ledger.record_dispatch(ctx, call, result)
        ledger.record_completion(ctx)

        for entry in ledger.replay():
            ...
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._entry_count = 0
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            with open(self.path, encoding="utf-8") as f:
                self._entry_count = sum(1 for _ in f)

    def record_start(self, ctx: SessionContext, model_name: str, extra: dict[str, Any] | None = None) -> LedgerEntry:
        return self._append(ctx, "start", {
            "task_id": ctx.task_id,
            "target_path": ctx.target_path,
            "vulnerability": ctx.vulnerability,
            "max_steps": ctx.max_steps,
            "model": model_name,
            **(extra or {}),
        })

    def record_message(self, ctx: SessionContext, message: Message) -> LedgerEntry:
        return self._append(ctx, "message", message.to_record())

    def record_dispatch(self, ctx: SessionContext, call: ToolCall, result: ToolResult) -> LedgerEntry:
        return self._append(ctx, "dispatch", {
            "tool_call_id": call.id,
            "tool": call.name,
            "arguments": call.raw_arguments[:4000],
            "ok": result.ok,
            "kind": result.kind.value,
            "path": result.path,
        })

    def record_nudge(self, ctx: SessionContext, guard_name: str, text: str) -> LedgerEntry:
        return self._append(ctx, "nudge", {"guard": guard_name, "text": text})

    def record_completion(self, ctx: SessionContext, extra: dict[str, Any] | None = None) -> LedgerEntry:
        return self._append(ctx, "completion", {
            "status": ctx.status.value,
            "reason": ctx.completion_reason,
            "total_steps": ctx.step_index,
            "transcript_length": len(ctx.transcript),
            **(extra or {}),
        })

    def _append(self, ctx: SessionContext, entry_type: str, data: dict[str, Any]) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=f"e{self._entry_count:06d}",
            step_index=ctx.step_index,
            entry_type=entry_type,
            data=tuple(sorted(data.items())),
        )
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.to_json() + "\n")
        self._entry_count += 1
        return entry

    def replay(self) -> list[LedgerEntry]:
        return list(self.replay_iter())

    def replay_iter(self) -> Iterator[LedgerEntry]:
        """Iterate over entries (memory-efficient)."""
        if self.path.exists():
            with open(self.path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        yield LedgerEntry.from_json(line)

    def get_summary(self) -> dict[str, Any]:
        entries = self.replay()
        dispatches = [e for e in entries if e.entry_type == "dispatch"]
        completions = [e for e in entries if e.entry_type == "completion"]
        final = dict(completions[-1].data) if completions else {}

        return {
            "total_entries": len(entries),
            "dispatches": len(dispatches),
            "failed_dispatches": sum(1 for e in dispatches if not dict(e.data).get("ok", False)),
            "nudges": sum(1 for e in entries if e.entry_type == "nudge"),
            "completed": bool(completions),
            "status": final.get("status"),
            "reason": final.get("reason"),
        }


def create_ledger(task_id: str, base_dir: Path | str = ".") -> SessionLedger:
    """Create a fresh ledger file under ``base_dir/ledgers``."""
    ledger_dir = Path(base_dir) / LEDGER_DIR_NAME
    ledger_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return SessionLedger(ledger_dir / f"{task_id}_{timestamp}.jsonl")
