"""Proposal Schema - path-scoped replacement requests and auditor verdicts.

Proposals are DATA. The auditor's answer is a tagged variant
(``Approved`` | ``Rejected``) produced by a strict parser at the collaborator
boundary, so nothing downstream re-parses prose.

INVARIANTS:
- Proposals are immutable
- A verdict is exactly one of Approved or Rejected
- Only the newest unconsumed proposal for a path can authorize a write
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


@dataclass(frozen=True)
class Approved:
    """Auditor accepted the proposal."""

    rationale: str

    @property
    def approved(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """Auditor refused the proposal."""

    rationale: str

    @property
    def approved(self) -> bool:
        return False


Verdict = Union[Approved, Rejected]


class ProposalState(Enum):
    """Per-path approval state machine."""

    NONE = "none"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONSUMED = "consumed"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Proposal:
    """Immutable request to replace a file's content.

    ``basis_content`` is what was on disk when the proposal was reviewed
    (empty for a new file).
    """

    path: str  # resolved key
    display_path: str
    proposed_content: str
    basis_content: str
    is_new_file: bool
    verdict: Verdict
    proposal_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def approved(self) -> bool:
        return isinstance(self.verdict, Approved)

    @property
    def rationale(self) -> str:
        return self.verdict.rationale

    def matches(self, content: str) -> bool:
        """True if ``content`` is exactly what was reviewed."""
        return content_hash(content) == content_hash(self.proposed_content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "path": self.display_path,
            "verdict": "approved" if self.approved else "rejected",
            "rationale": self.rationale,
            "is_new_file": self.is_new_file,
            "proposed_hash": content_hash(self.proposed_content),
            "basis_hash": content_hash(self.basis_content),
            "timestamp": self.timestamp,
        }
