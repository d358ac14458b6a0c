"""Collaborator Interface - abstract protocols for everything outside the core.

Collaborators are NON-TRUSTED or EXTERNAL components reached through a narrow
interface: the model, the auditor, the linter, version control and the
knowledge base. Concrete network/subprocess implementations live in
``warden_collaborators``; this module holds the protocols and the in-memory
doubles used for tests and dry runs.

INVARIANTS:
1. The model only returns turns, it never executes
2. The auditor only returns a Verdict, it never writes
3. Version control is touched only at terminal states
4. Collaborators are REPLACEABLE (protocol-based)
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .proposal import Approved, Rejected, Verdict
from .state import ToolCall

if TYPE_CHECKING:
    from .state import Message


@dataclass(frozen=True)
class ModelTurn:
    """One model response: optional text plus zero or more tool calls."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.content.strip() and not self.tool_calls


@dataclass(frozen=True)
class Diagnostic:
    """One linter finding."""

    code: str
    message: str
    start: int = 0
    end: int = 0

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ModelClient(abc.ABC):
    """Black-box turn function."""

    @abc.abstractmethod
    def complete(self, transcript: list[Message], tool_schemas: list[dict[str, Any]]) -> ModelTurn:
        """Return the next turn for ``transcript``."""
        ...

    def get_name(self) -> str:
        return self.__class__.__name__


class Auditor(abc.ABC):
    """Reviews a proposed file replacement."""

    @abc.abstractmethod
    def review(self, path: str, proposed_content: str, current_content: str, evidence: str) -> Verdict:
        """Return Approved or Rejected with a rationale."""
        ...


class Linter(abc.ABC):
    """Static checker run after every write."""

    @abc.abstractmethod
    def lint(self, path: Path) -> list[Diagnostic]:
        """Return diagnostics for the file at ``path`` (empty list when clean)."""
        ...

    def supports(self, path: Path) -> bool:
        return True


class VersionControl(abc.ABC):
    """Rollback on FAILURE; commit flow on SUCCESS (driven outside the loop)."""

    @abc.abstractmethod
    def rollback(self, root: Path) -> None:
        """Discard uncommitted changes under ``root``."""
        ...

    def create_branch(self, root: Path, name: str) -> str:
        raise NotImplementedError

    def commit(self, root: Path, message: str, paths: Iterable[str] = (".",)) -> str:
        raise NotImplementedError

    def push(self, root: Path, branch: str) -> str:
        raise NotImplementedError

    def create_pull_request(self, root: Path, branch: str, title: str, body: str) -> str:
        raise NotImplementedError


class KnowledgeBase(abc.ABC):
    """Reference lookup for remediation patterns."""

    @abc.abstractmethod
    def lookup(self, query: str) -> str:
        ...


class ScriptedModel(ModelClient):
    """Returns predefined turns in order, then empty turns.

    Useful for tests and replay scenarios.
    """

    def __init__(self, turns: list[ModelTurn]):
        self._turns = list(turns)
        self._index = 0
        self.seen_transcripts: list[list[Message]] = []

    def complete(self, transcript: list[Message], tool_schemas: list[dict[str, Any]]) -> ModelTurn:
        self.seen_transcripts.append(list(transcript))
        if self._index < len(self._turns):
            turn = self._turns[self._index]
            self._index += 1
            return turn
        return ModelTurn()

    @property
    def calls(self) -> int:
        return len(self.seen_transcripts)


class StaticAuditor(Auditor):
    """Approves everything unless told otherwise; records what it saw."""

    def __init__(self, approve: bool = True, rationale: str = "static review", verdicts: list[Verdict] | None = None):
        self._approve = approve
        self._rationale = rationale
        self._verdicts = list(verdicts or [])
        self.reviews: list[tuple[str, str, str, str]] = []

    def review(self, path: str, proposed_content: str, current_content: str, evidence: str) -> Verdict:
        self.reviews.append((path, proposed_content, current_content, evidence))
        if self._verdicts:
            return self._verdicts.pop(0)
        return Approved(self._rationale) if self._approve else Rejected(self._rationale)


class NullLinter(Linter):
    """Linter that reports nothing, or a fixed list."""

    def __init__(self, diagnostics: list[Diagnostic] | None = None):
        self._diagnostics = list(diagnostics or [])
        self.linted: list[Path] = []

    def lint(self, path: Path) -> list[Diagnostic]:
        self.linted.append(path)
        return list(self._diagnostics)


class NullVersionControl(VersionControl):
    """Records rollback requests without touching git."""

    def __init__(self) -> None:
        self.rollbacks: list[Path] = []

    def rollback(self, root: Path) -> None:
        self.rollbacks.append(Path(root))


@dataclass
class StaticKnowledgeBase(KnowledgeBase):
    entries: dict[str, str] = field(default_factory=dict)
    fallback: str = "No specific match."

    def lookup(self, query: str) -> str:
        normalized = query.strip().lower()
        if not normalized:
            return self.fallback
        for key, text in self.entries.items():
            if key.lower() in normalized or normalized in key.lower():
                return text
        return self.fallback
