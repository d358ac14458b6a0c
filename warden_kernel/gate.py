"""Approval Gate - propose -> audit -> commit, enforced per path.

State machine per resolved path:

    NONE -> PROPOSED -> {APPROVED, REJECTED}
    APPROVED -> CONSUMED   (on successful write)
    any -> PROPOSED        (a new proposal supersedes everything before it)

CRITICAL INVARIANTS:
1. Only the newest, unconsumed, APPROVED proposal for a path authorizes a write
2. Paths are compared after resolution, so aliases (./a.ts vs a.ts) collapse
3. An approval for path A never authorizes path B
4. A consumed approval cannot be replayed
5. Approval persists a checkpoint immediately
6. Blocked writes say exactly what to do next
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .audit import ActionKind, AuditLog, AuditStatus
from .checkpoint import CheckpointStore
from .collaborators import Auditor
from .errors import AccessDenied, ApprovalRequired
from .proposal import Approved, Proposal, ProposalState, Rejected
from .sandbox import ResolvedPath, SandboxResolver

logger = logging.getLogger(__name__)


@dataclass
class _PathRecord:
    state: ProposalState
    proposal: Proposal | None = None


class ApprovalGate:
    """Tracks the approval state of every path in one session.

    Usage:
        gate = ApprovalGate(resolver, auditor, checkpoints, audit_log)
        proposal = gate.propose("src/a.ts", new_code)
        if gate.authorize_write("src/a.ts"):
            ...write...
            gate.consume("src/a.ts")
    """

    def __init__(
        self,
        resolver: SandboxResolver,
        auditor: Auditor,
        checkpoints: CheckpointStore,
        audit_log: AuditLog,
        default_evidence: str = "",
    ):
        self._resolver = resolver
        self._auditor = auditor
        self._checkpoints = checkpoints
        self._audit = audit_log
        self._default_evidence = default_evidence
        self._records: dict[str, _PathRecord] = {}
        self._last_approved: str | None = None

    def propose(self, path: str, proposed_content: str, evidence: str | None = None) -> Proposal:
        """Review ``proposed_content`` for ``path`` and record the verdict.

        Raises:
            AccessDenied: the path fails sandbox resolution or is a directory.
        """
        resolved = self._resolver.resolve(path)
        if resolved.physical.is_dir():
            raise AccessDenied(path, "target is a directory, propose a file path")

        # Supersede first: a crash inside review must not leave an old approval live
        self._records[resolved.key] = _PathRecord(ProposalState.PROPOSED)

        is_new_file = not resolved.physical.exists()
        current = "" if is_new_file else resolved.physical.read_text(encoding="utf-8", errors="replace")

        if evidence is None:
            failure = self._audit.latest_failure()
            evidence = failure.output if failure else self._default_evidence

        logger.info(f"Auditor reviewing {resolved.virtual} ({'new file' if is_new_file else 'existing file'})")
        verdict = self._auditor.review(resolved.virtual, proposed_content, current, evidence)
        if not isinstance(verdict, (Approved, Rejected)):
            raise TypeError(f"Auditor returned {type(verdict).__name__}, expected Approved or Rejected")

        proposal = Proposal(
            path=resolved.key,
            display_path=resolved.virtual,
            proposed_content=proposed_content,
            basis_content=current,
            is_new_file=is_new_file,
            verdict=verdict,
        )

        if proposal.approved:
            self._records[resolved.key] = _PathRecord(ProposalState.APPROVED, proposal)
            self._last_approved = resolved.virtual
            self._checkpoints.save(resolved.virtual, proposed_content)
            self._audit.record(resolved.virtual, ActionKind.PROPOSE, AuditStatus.SUCCESS, verdict.rationale)
            logger.info(f"  APPROVED {resolved.virtual}")
        else:
            self._records[resolved.key] = _PathRecord(ProposalState.REJECTED, proposal)
            self._audit.record(resolved.virtual, ActionKind.PROPOSE, AuditStatus.REJECTED, verdict.rationale)
            logger.info(f"  REJECTED {resolved.virtual}: {verdict.rationale[:200]}")

        return proposal

    def state(self, path: str | ResolvedPath) -> ProposalState:
        record = self._records.get(self._key(path))
        return record.state if record else ProposalState.NONE

    def authorize_write(self, path: str | ResolvedPath) -> bool:
        """True iff the current state for ``path`` is exactly APPROVED."""
        try:
            return self.state(path) == ProposalState.APPROVED
        except AccessDenied:
            return False

    def require_write(self, path: str | ResolvedPath, content: str | None = None) -> Proposal:
        """Return the approved proposal for ``path`` or raise ApprovalRequired.

        When ``content`` is given it must equal the reviewed content.
        """
        display = path.virtual if isinstance(path, ResolvedPath) else path
        record = self._records.get(self._key(path))

        if record is None:
            raise ApprovalRequired(display, "this path has never been approved by the auditor", self._last_approved)
        if record.state == ProposalState.CONSUMED:
            raise ApprovalRequired(display, "the approval for this path was already used by a previous write", self._last_approved)
        if record.state == ProposalState.REJECTED:
            raise ApprovalRequired(display, "the most recent proposal for this path was REJECTED", self._last_approved)
        if record.state != ProposalState.APPROVED or record.proposal is None:
            raise ApprovalRequired(display, f"proposal state is {record.state.value}, not approved", self._last_approved)
        if content is not None and not record.proposal.matches(content):
            raise ApprovalRequired(display, "content differs from the approved proposal", self._last_approved)
        return record.proposal

    def consume(self, path: str | ResolvedPath) -> None:
        """APPROVED -> CONSUMED after a successful write."""
        key = self._key(path)
        record = self._records.get(key)
        if record is None or record.state != ProposalState.APPROVED:
            raise ApprovalRequired(str(path), "nothing to consume")
        self._records[key] = _PathRecord(ProposalState.CONSUMED, record.proposal)
        logger.debug(f"Approval consumed: {key}")

    def last_reviewed(self, path: str | ResolvedPath) -> Proposal | None:
        """Newest approved proposal for ``path``, consumed or not."""
        record = self._records.get(self._key(path))
        if record and record.proposal is not None and record.proposal.approved:
            return record.proposal
        return None

    def _key(self, path: str | ResolvedPath) -> str:
        resolved = path if isinstance(path, ResolvedPath) else self._resolver.resolve(path)
        return resolved.key
