"""Tests for the sandboxed executor (read, list, write).

INVARIANTS TESTED:
1. No write reaches disk without a live approval for the exact path
2. A successful write consumes the approval
3. Truncated content and diffs never reach disk
4. Lint and verification failures are reported, and the file stays unless revert is configured
5. Listings skip ignored and restricted entries and never follow symlinked directories
"""

import json
import os
import subprocess
from unittest.mock import patch

import pytest

from warden_kernel import (
    AccessDenied,
    ActionKind,
    ApprovalRequired,
    AuditStatus,
    CommandRejected,
    Diagnostic,
    IncompleteContent,
    KernelConfig,
    NullLinter,
    ProposalState,
    ResultKind,
    WriteConfig,
)
from warden_kernel.executor import is_test_path

from conftest import AUTH_SERVICE, FIXED_AUTH_SERVICE

TARGET = "src/services/authService.ts"
TEST_FILE = "tests/auth.test.ts"
NEW_TEST = """import { signToken } from '../src/services/authService';

test('refuses to sign without a secret', () => {
  delete process.env.JWT_SECRET;
  expect(() => signToken('u1')).toThrow();
});
"""


class UnsupportedLinter(NullLinter):
    def supports(self, path):
        return False


class TestRead:

    def test_reads_file_and_audits(self, make_components):
        components = make_components()
        output = components.executor.read(TARGET)

        assert output.ok
        assert output.text == AUTH_SERVICE
        entry = components.audit_log.query(limit=1)[0]
        assert (entry.action_kind, entry.status, entry.path) == (ActionKind.READ, AuditStatus.SUCCESS, TARGET)

    def test_directory_returns_listing(self, make_components):
        output = make_components().executor.read("src")

        assert output.ok
        assert output.text.startswith("'src' is a directory.")
        assert "src/services" in output.text

    def test_missing_file_is_not_found(self, make_components):
        output = make_components().executor.read("src/missing.ts")

        assert not output.ok
        assert output.kind == ResultKind.NOT_FOUND

    def test_restricted_file_is_denied(self, make_components):
        with pytest.raises(AccessDenied):
            make_components().executor.read(".env")


class TestListFiles:

    def test_top_level_skips_ignored_and_restricted(self, make_components):
        output = make_components().executor.list_files(".")
        names = [entry["name"] for entry in json.loads(output.text)]

        assert names == ["package.json", "src", "tests"]

    def test_entry_shape(self, make_components):
        entries = json.loads(make_components().executor.list_files("src").text)
        assert entries == [{"name": "services", "type": "directory", "path": "src/services"}]

    def test_recursive(self, make_components):
        entries = json.loads(make_components().executor.list_files(".", recursive=True).text)
        paths = {entry["path"] for entry in entries}

        assert TARGET in paths
        assert TEST_FILE in paths
        assert not any(p.startswith("node_modules") or p.startswith(".git") for p in paths)

    def test_symlinked_directory_is_not_entered(self, make_components, project):
        os.symlink(project / "src", project / "linked")
        entries = json.loads(make_components().executor.list_files(".", recursive=True).text)
        paths = {entry["path"] for entry in entries}

        assert "linked" in paths
        assert not any(p.startswith("linked/") for p in paths)

    def test_file_path_lists_itself(self, make_components):
        entries = json.loads(make_components().executor.list_files(TARGET).text)
        assert entries == [{"name": "authService.ts", "type": "file", "path": TARGET}]

    def test_missing_directory(self, make_components):
        output = make_components().executor.list_files("lib")
        assert output.kind == ResultKind.NOT_FOUND


class TestWriteGating:
    """Writes require a live approval for the exact path and content."""

    def test_unapproved_write_blocked(self, make_components, project):
        with pytest.raises(ApprovalRequired):
            make_components().executor.write(TARGET, FIXED_AUTH_SERVICE)
        assert (project / TARGET).read_text() == AUTH_SERVICE

    def test_approved_write_lands_and_consumes(self, make_components, project):
        components = make_components()
        proposal = components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        output = components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        assert output.ok
        assert output.text.startswith(f"FILE SAVED: {TARGET}")
        assert (project / TARGET).read_text() == FIXED_AUTH_SERVICE
        assert components.gate.state(TARGET) == ProposalState.CONSUMED

        entry = components.audit_log.query(limit=1)[0]
        assert entry.action_kind == ActionKind.WRITE_SRC
        assert entry.status == AuditStatus.SUCCESS
        assert entry.detail == proposal.proposal_id

    def test_approval_cannot_be_replayed(self, make_components):
        components = make_components()
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        with pytest.raises(ApprovalRequired):
            components.executor.write(TARGET, FIXED_AUTH_SERVICE)

    def test_approval_for_source_does_not_cover_test(self, make_components, project):
        components = make_components()
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        with pytest.raises(ApprovalRequired):
            components.executor.write(TEST_FILE, NEW_TEST)
        assert NEW_TEST != (project / TEST_FILE).read_text()
        assert components.gate.authorize_write(TARGET)

    def test_content_must_match_approval(self, make_components, project):
        components = make_components()
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        with pytest.raises(ApprovalRequired):
            components.executor.write(TARGET, FIXED_AUTH_SERVICE.replace("HS256", "none"))
        assert (project / TARGET).read_text() == AUTH_SERVICE

    def test_content_match_can_be_relaxed(self, make_components, project):
        config = KernelConfig(write_config=WriteConfig(require_exact_content=False))
        components = make_components(config=config)
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        edited = FIXED_AUTH_SERVICE + "\nexport const VERSION = 2;\n"

        assert components.executor.write(TARGET, edited).ok
        assert (project / TARGET).read_text() == edited

    def test_test_files_are_audited_as_test_writes(self, make_components):
        components = make_components()
        components.gate.propose(TEST_FILE, NEW_TEST)
        components.executor.write(TEST_FILE, NEW_TEST)

        assert components.audit_log.query(limit=1)[0].action_kind == ActionKind.WRITE_TEST

    def test_new_file_creates_parents(self, make_components, project):
        components = make_components()
        content = "export const JWT_SECRET = process.env.JWT_SECRET;\n"
        components.gate.propose("src/config/env.ts", content)
        components.executor.write("src/config/env.ts", content)

        assert (project / "src" / "config" / "env.ts").read_text() == content

    def test_directory_target_denied(self, make_components):
        with pytest.raises(AccessDenied):
            make_components().executor.write("src", "export {};")


class TestCompletenessGuard:
    """Snippets and diffs are refused before touching disk."""

    def test_truncated_content_refused(self, make_components, project):
        components = make_components()
        snippet = "import jwt from 'jsonwebtoken';\n"
        components.gate.propose(TARGET, snippet)

        with pytest.raises(IncompleteContent) as exc:
            components.executor.write(TARGET, snippet)

        assert "30%" in exc.value.reason
        assert (project / TARGET).read_text() == AUTH_SERVICE
        # Refused content leaves the approval unused
        assert components.gate.state(TARGET) == ProposalState.APPROVED
        entry = components.audit_log.query(limit=1)[0]
        assert (entry.status, entry.detail) == (AuditStatus.VALIDATION_FAILED, "not written")

    def test_unified_diff_refused(self, make_components, project):
        components = make_components()
        diff = (
            "--- a/src/services/authService.ts\n"
            "+++ b/src/services/authService.ts\n"
            "@@ -3,1 +3,1 @@\n"
            "-const SECRET = 'super-secret-key';\n"
            "+const SECRET = process.env.JWT_SECRET;\n"
        ) * 3
        components.gate.propose(TARGET, diff)

        with pytest.raises(IncompleteContent) as exc:
            components.executor.write(TARGET, diff)
        assert "diff" in exc.value.reason
        assert (project / TARGET).read_text() == AUTH_SERVICE

    def test_dropped_module_statements_refused(self, make_components):
        components = make_components()
        body = "const SECRET = process.env.JWT_SECRET;\n" * 10
        components.gate.propose(TARGET, body)

        with pytest.raises(IncompleteContent) as exc:
            components.executor.write(TARGET, body)
        assert "import/export" in exc.value.reason

    @pytest.mark.parametrize("path,expected", [
        ("tests/auth.test.ts", True),
        ("src/auth.test.ts", True),
        ("src/auth.spec.js", True),
        ("src/__tests__/auth.ts", True),
        ("test/auth.ts", True),
        ("src/services/authService.ts", False),
        ("src/latest/auth.ts", False),
        ("src/contest.ts", False),
    ])
    def test_is_test_path(self, path, expected):
        assert is_test_path(path) is expected


class TestPostWriteValidation:
    """Lint and verification results are surfaced, never swallowed."""

    def test_lint_errors_reported_and_file_kept(self, make_components, project):
        linter = NullLinter([Diagnostic("lint/suspicious/noExplicitAny", "Unexpected any")])
        components = make_components(linter=linter)
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        output = components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        assert not output.ok
        assert output.kind == ResultKind.VALIDATION_FAILED
        assert "LINT_ERROR: 1 diagnostic(s)" in output.text
        assert "[lint/suspicious/noExplicitAny] Unexpected any" in output.text
        assert (project / TARGET).read_text() == FIXED_AUTH_SERVICE
        assert components.gate.state(TARGET) == ProposalState.CONSUMED
        assert components.audit_log.query(limit=1)[0].status == AuditStatus.LINT_ERROR

    def test_unsupported_files_skip_lint(self, make_components):
        linter = UnsupportedLinter([Diagnostic("x", "never")])
        components = make_components(linter=linter)
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        output = components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        assert output.ok
        assert "LINT: skipped" in output.text
        assert linter.linted == []

    def test_verify_command_failure(self, make_components):
        config = KernelConfig(write_config=WriteConfig(verify_command="npm test"))
        components = make_components(config=config)
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        failed = subprocess.CompletedProcess(["npm", "test"], 1, stdout="", stderr="1 failing\n")
        with patch("warden_kernel.commands.subprocess.run", return_value=failed):
            output = components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        assert output.kind == ResultKind.VALIDATION_FAILED
        assert "VERIFY 'npm test': FAILED (exit 1)" in output.text
        statuses = [e.status for e in components.audit_log.query(limit=2)]
        assert statuses == [AuditStatus.VALIDATION_FAILED, AuditStatus.COMMAND_ERROR]

    def test_verify_skipped_when_lint_fails(self, make_components):
        config = KernelConfig(write_config=WriteConfig(verify_command="npm test"))
        components = make_components(config=config, linter=NullLinter([Diagnostic("parse", "Unexpected token")]))
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)

        with patch("warden_kernel.commands.subprocess.run") as mock_run:
            components.executor.write(TARGET, FIXED_AUTH_SERVICE)
            mock_run.assert_not_called()

    def test_revert_restores_original(self, make_components, project):
        config = KernelConfig(write_config=WriteConfig(revert_on_validation_failure=True))
        components = make_components(config=config, linter=NullLinter([Diagnostic("parse", "Unexpected token")]))
        components.gate.propose(TARGET, FIXED_AUTH_SERVICE)
        output = components.executor.write(TARGET, FIXED_AUTH_SERVICE)

        assert "reverted" in output.text
        assert (project / TARGET).read_text() == AUTH_SERVICE

    def test_revert_removes_new_file(self, make_components, project):
        config = KernelConfig(write_config=WriteConfig(revert_on_validation_failure=True))
        components = make_components(config=config, linter=NullLinter([Diagnostic("parse", "Unexpected token")]))
        content = "export const JWT_SECRET = process.env.JWT_SECRET;\n"
        components.gate.propose("src/env.ts", content)
        components.executor.write("src/env.ts", content)

        assert not (project / "src" / "env.ts").exists()

    def test_disallowed_verify_command_fails_at_construction(self, make_components):
        config = KernelConfig(write_config=WriteConfig(verify_command="make test"))
        with pytest.raises(CommandRejected):
            make_components(config=config)
