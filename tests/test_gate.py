"""Tests for the approval gate.

INVARIANTS TESTED:
1. Only the newest, unconsumed, APPROVED proposal authorizes a write
2. Aliases of one path share one approval, distinct paths never do
3. A consumed approval cannot be replayed
4. Approval persists a checkpoint immediately
5. Every verdict is audited
"""

from unittest.mock import MagicMock

import pytest

from warden_kernel import (
    AccessDenied,
    ActionKind,
    ApprovalRequired,
    Approved,
    AuditStatus,
    ProposalState,
    Rejected,
    StaticAuditor,
)

from conftest import AUTH_SERVICE, FIXED_AUTH_SERVICE

TARGET = "src/services/authService.ts"


class TestApprovalStateMachine:
    """NONE -> PROPOSED -> {APPROVED, REJECTED} -> CONSUMED."""

    def test_unknown_path_is_none(self, make_components):
        gate = make_components().gate
        assert gate.state(TARGET) == ProposalState.NONE
        assert not gate.authorize_write(TARGET)

    def test_approval_authorizes(self, make_components):
        gate = make_components().gate
        proposal = gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert proposal.approved
        assert gate.state(TARGET) == ProposalState.APPROVED
        assert gate.authorize_write(TARGET)

    def test_rejection_does_not_authorize(self, make_components):
        gate = make_components(auditor=StaticAuditor(approve=False, rationale="still hardcoded")).gate
        proposal = gate.propose(TARGET, AUTH_SERVICE)

        assert not proposal.approved
        assert proposal.rationale == "still hardcoded"
        assert gate.state(TARGET) == ProposalState.REJECTED
        assert not gate.authorize_write(TARGET)

    def test_consume_ends_authorization(self, make_components):
        gate = make_components().gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)
        gate.consume(TARGET)

        assert gate.state(TARGET) == ProposalState.CONSUMED
        assert not gate.authorize_write(TARGET)
        with pytest.raises(ApprovalRequired) as exc:
            gate.require_write(TARGET)
        assert "already used" in exc.value.reason

    def test_consume_requires_approval(self, make_components):
        gate = make_components().gate
        with pytest.raises(ApprovalRequired):
            gate.consume(TARGET)

    def test_newer_rejection_supersedes_approval(self, make_components):
        auditor = StaticAuditor(verdicts=[Approved("fine"), Rejected("regressed")])
        gate = make_components(auditor=auditor).gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)
        gate.propose(TARGET, AUTH_SERVICE)

        assert not gate.authorize_write(TARGET)
        with pytest.raises(ApprovalRequired) as exc:
            gate.require_write(TARGET)
        assert "REJECTED" in exc.value.reason

    def test_new_proposal_after_consume_re_authorizes(self, make_components):
        gate = make_components().gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)
        gate.consume(TARGET)
        gate.propose(TARGET, FIXED_AUTH_SERVICE + "\n")

        assert gate.authorize_write(TARGET)

    def test_auditor_crash_leaves_no_live_approval(self, make_components):
        auditor = StaticAuditor()
        gate = make_components(auditor=auditor).gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)

        auditor.review = MagicMock(side_effect=RuntimeError("auditor offline"))
        with pytest.raises(RuntimeError):
            gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert gate.state(TARGET) == ProposalState.PROPOSED
        assert not gate.authorize_write(TARGET)

    def test_malformed_verdict_raises(self, make_components):
        auditor = StaticAuditor()
        auditor.review = MagicMock(return_value="APPROVED")
        gate = make_components(auditor=auditor).gate

        with pytest.raises(TypeError):
            gate.propose(TARGET, FIXED_AUTH_SERVICE)
        assert not gate.authorize_write(TARGET)


class TestPathIdentity:
    """Approval is keyed by the resolved path."""

    def test_aliases_share_approval(self, make_components):
        gate = make_components().gate
        gate.propose("./src/services/authService.ts", FIXED_AUTH_SERVICE)

        assert gate.authorize_write(TARGET)
        assert gate.authorize_write("src/services/../services/authService.ts")

    def test_approval_never_transfers(self, make_components):
        gate = make_components().gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert not gate.authorize_write("tests/auth.test.ts")
        with pytest.raises(ApprovalRequired) as exc:
            gate.require_write("tests/auth.test.ts")
        assert exc.value.last_approved == TARGET
        assert "never been approved" in exc.value.reason

    def test_escaping_path_is_denied_before_review(self, make_components):
        auditor = StaticAuditor()
        gate = make_components(auditor=auditor).gate

        with pytest.raises(AccessDenied):
            gate.propose("../outside.ts", "export const x = 1;")
        assert auditor.reviews == []
        assert not gate.authorize_write("../outside.ts")

    def test_directory_cannot_be_proposed(self, make_components):
        gate = make_components().gate
        with pytest.raises(AccessDenied):
            gate.propose("src/services", "export const x = 1;")


class TestReviewInputs:
    """The auditor sees the proposal, the current file and the evidence."""

    def test_current_content_and_default_evidence(self, make_components):
        auditor = StaticAuditor()
        gate = make_components(auditor=auditor).gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)

        path, proposed, current, evidence = auditor.reviews[0]
        assert path == TARGET
        assert proposed == FIXED_AUTH_SERVICE
        assert current == AUTH_SERVICE
        assert evidence == "hardcoded JWT secret"

    def test_latest_failure_becomes_evidence(self, make_components):
        auditor = StaticAuditor()
        components = make_components(auditor=auditor)
        components.audit_log.record("SYSTEM", ActionKind.EXEC, AuditStatus.COMMAND_ERROR, "1 failing: signToken")
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert auditor.reviews[0][3] == "1 failing: signToken"

    def test_explicit_evidence_wins(self, make_components):
        auditor = StaticAuditor()
        gate = make_components(auditor=auditor).gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE, evidence="CWE-798")

        assert auditor.reviews[0][3] == "CWE-798"

    def test_new_file(self, make_components):
        auditor = StaticAuditor()
        gate = make_components(auditor=auditor).gate
        proposal = gate.propose("src/config/env.ts", "export const SECRET = process.env.JWT_SECRET;\n")

        assert proposal.is_new_file
        assert proposal.basis_content == ""
        assert auditor.reviews[0][2] == ""

    def test_non_utf8_file_is_reviewed(self, make_components, project):
        (project / "src" / "legacy.js").write_bytes(b"var caf\xe9 = 'x';\nmodule.exports = caf\xe9;\n")
        auditor = StaticAuditor()
        proposal = make_components(auditor=auditor).gate.propose("src/legacy.js", "module.exports = 1;\n")

        assert proposal.approved
        assert "�" in auditor.reviews[0][2]


class TestApprovalSideEffects:
    """Checkpoints and audit entries follow every verdict."""

    def test_approval_saves_checkpoint(self, make_components):
        components = make_components()
        components.gate.propose("./" + TARGET, FIXED_AUTH_SERVICE)

        assert components.checkpoints.load(TARGET) == FIXED_AUTH_SERVICE

    def test_rejection_saves_no_checkpoint(self, make_components):
        components = make_components(auditor=StaticAuditor(approve=False))
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert not components.checkpoints.has(TARGET)

    def test_verdicts_are_audited(self, make_components):
        auditor = StaticAuditor(verdicts=[Approved("ok"), Rejected("no")])
        components = make_components(auditor=auditor)
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        components.gate.propose(TARGET, AUTH_SERVICE)

        entries = components.audit_log.query(action=ActionKind.PROPOSE)
        assert [(e.status, e.output) for e in entries] == [
            (AuditStatus.REJECTED, "no"),
            (AuditStatus.SUCCESS, "ok"),
        ]

    def test_require_write_checks_content(self, make_components):
        gate = make_components().gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)

        assert gate.require_write(TARGET, FIXED_AUTH_SERVICE).approved
        with pytest.raises(ApprovalRequired) as exc:
            gate.require_write(TARGET, FIXED_AUTH_SERVICE + "// extra\n")
        assert "differs" in exc.value.reason

    def test_last_reviewed_survives_consume(self, make_components):
        gate = make_components().gate
        gate.propose(TARGET, FIXED_AUTH_SERVICE)
        gate.consume(TARGET)

        reviewed = gate.last_reviewed(TARGET)
        assert reviewed is not None
        assert reviewed.proposed_content == FIXED_AUTH_SERVICE
