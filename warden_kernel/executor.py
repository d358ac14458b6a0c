"""Sandboxed Executor - file read, list and write behind the resolver and gate.

The executor ONLY writes content the Approval Gate authorized, and every
filesystem path it touches has passed the Sandbox Resolver first.

INVARIANTS:
1. No write reaches disk without a live approval for the exact resolved path
2. A successful write consumes the approval
3. Truncated content, snippets and diffs are refused before touching disk
4. Lint and verification results are returned to the caller, never swallowed
5. A failed validation leaves the file as written unless configured otherwise
6. Listing re-resolves every child, it never trusts a joined physical path
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any

from .audit import ActionKind, AuditLog, AuditStatus
from .collaborators import Diagnostic, Linter
from .commands import CommandExecutor, CommandResult
from .errors import AccessDenied, IncompleteContent, ResultKind
from .gate import ApprovalGate
from .sandbox import ResolvedPath, SandboxResolver
from .state import ToolOutput

logger = logging.getLogger(__name__)

IGNORED_NAMES = frozenset({
    "node_modules",
    ".git",
    "dist",
    "build",
    "coverage",
    ".DS_Store",
    "__pycache__",
    ".venv",
})

MAX_LIST_ENTRIES = 2000

# import/export/require style markers a complete JS/TS module carries
MODULE_MARKER_RE = re.compile(
    r"^\s*(import\s|import\(|export\s|from\s+\S+\s+import\s|"
    r".*\brequire\(|module\.exports|[\"']use strict[\"'])",
    re.MULTILINE,
)
DIFF_HUNK_RE = re.compile(r"^@@ -\d+(,\d+)? \+\d+(,\d+)? @@", re.MULTILINE)
DIFF_HEADER_RE = re.compile(r"^--- \S.*\n\+\+\+ \S", re.MULTILINE)
TEST_PATH_RE = re.compile(r"(^|/)(tests?|__tests__)/|\.(test|spec)\.[^./]+$")


def is_test_path(virtual_path: str) -> bool:
    """True for files under a tests directory or named *.test.* / *.spec.*."""
    return bool(TEST_PATH_RE.search(virtual_path))


@dataclass(frozen=True)
class WriteConfig:
    """Immutable write policy."""

    min_length_ratio: float = 0.3
    require_module_marker: bool = True
    require_exact_content: bool = True
    verify_command: str | None = None
    revert_on_validation_failure: bool = False


@dataclass(frozen=True)
class WriteOutcome:
    """What happened after content reached disk."""

    path: str
    action: ActionKind
    chars_written: int
    diagnostics: tuple[Diagnostic, ...]
    lint_skipped: bool
    verification: CommandResult | None = None
    reverted: bool = False

    @property
    def lint_ok(self) -> bool:
        return not self.diagnostics

    @property
    def verified(self) -> bool:
        return self.verification is None or self.verification.ok

    @property
    def ok(self) -> bool:
        return self.lint_ok and self.verified

    @property
    def status(self) -> AuditStatus:
        if not self.lint_ok:
            return AuditStatus.LINT_ERROR
        if not self.verified:
            return AuditStatus.VALIDATION_FAILED
        return AuditStatus.SUCCESS

    def report(self) -> str:
        lines = [f"FILE SAVED: {self.path} ({self.chars_written} chars). Approval consumed."]
        if self.lint_skipped:
            lines.append("LINT: skipped (unsupported file type)")
        elif self.lint_ok:
            lines.append("LINT: passed")
        else:
            lines.append(f"LINT_ERROR: {len(self.diagnostics)} diagnostic(s)")
            lines.extend(f"  - {d}" for d in self.diagnostics)
        if self.verification is not None:
            verdict = "passed" if self.verification.ok else f"FAILED (exit {self.verification.exit_status})"
            lines.append(f"VERIFY '{self.verification.command}': {verdict}")
            if not self.verification.ok:
                lines.append(self.verification.output)
        if self.reverted:
            lines.append("File reverted to its previous content because validation failed.")
        elif not self.ok:
            lines.append(
                "The file stays as written. Propose a corrected full file for the same path; "
                "checkpoint_manager(load) returns the last approved version."
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "action": self.action.value,
            "status": self.status.value,
            "chars_written": self.chars_written,
            "diagnostics": [str(d) for d in self.diagnostics],
            "lint_skipped": self.lint_skipped,
            "verify_exit": self.verification.exit_status if self.verification else None,
            "reverted": self.reverted,
        }


class SandboxedExecutor:
    """File operations for the tool registry.

    Usage:
        executor = SandboxedExecutor(resolver, gate, linter, audit_log)
        executor.read("src/a.ts")
        executor.list_files("src", recursive=True)
        executor.write("src/a.ts", approved_content)
    """

    def __init__(
        self,
        resolver: SandboxResolver,
        gate: ApprovalGate,
        linter: Linter,
        audit_log: AuditLog,
        commands: CommandExecutor | None = None,
        config: WriteConfig | None = None,
    ):
        self._resolver = resolver
        self._gate = gate
        self._linter = linter
        self._audit = audit_log
        self._commands = commands
        self.config = config or WriteConfig()

        if self.config.verify_command:
            if commands is None:
                raise ValueError("verify_command requires a CommandExecutor")
            # Misconfiguration fails at construction, not after a write
            commands.gate.validate(self.config.verify_command)

    def read(self, path: str) -> ToolOutput:
        """File content, a listing for directories, NOT_FOUND for absent paths."""
        resolved = self._resolver.resolve(path)
        if resolved.physical.is_dir():
            listing = self.list_files(path)
            return ToolOutput(
                text=f"'{resolved.virtual}' is a directory. Its entries:\n{listing.text}",
                path=resolved.virtual,
            )
        if not resolved.physical.exists():
            return ToolOutput(
                text=f"NOT_FOUND: '{resolved.virtual}' does not exist. Use list_files to see what is there.",
                ok=False,
                kind=ResultKind.NOT_FOUND,
                path=resolved.virtual,
            )

        content = resolved.physical.read_text(encoding="utf-8", errors="replace")
        self._audit.record(resolved.virtual, ActionKind.READ, AuditStatus.SUCCESS, f"{len(content)} chars")
        return ToolOutput(text=content, path=resolved.virtual)

    def list_files(self, path: str = ".", recursive: bool = False) -> ToolOutput:
        """JSON list of ``{name, type, path}`` entries."""
        resolved = self._resolver.resolve(path)
        if not resolved.physical.exists():
            return ToolOutput(
                text=f"NOT_FOUND: '{resolved.virtual}' does not exist.",
                ok=False,
                kind=ResultKind.NOT_FOUND,
                path=resolved.virtual,
            )
        if not resolved.physical.is_dir():
            entries = [{"name": resolved.physical.name, "type": "file", "path": resolved.virtual}]
        else:
            entries = []
            self._walk(resolved, recursive, entries)

        text = json.dumps(entries, indent=2)
        if len(entries) >= MAX_LIST_ENTRIES:
            text += f"\n(listing truncated at {MAX_LIST_ENTRIES} entries)"
        return ToolOutput(text=text, path=resolved.virtual)

    def lint(self, path: str) -> ToolOutput:
        """Lint a file on disk without writing it."""
        resolved = self._resolver.resolve(path)
        if not resolved.physical.is_file():
            return ToolOutput(
                text=f"NOT_FOUND: '{resolved.virtual}' is not a file.",
                ok=False,
                kind=ResultKind.NOT_FOUND,
                path=resolved.virtual,
            )
        if not self._linter.supports(resolved.physical):
            return ToolOutput(text=f"LINT: skipped for '{resolved.virtual}' (unsupported file type)", path=resolved.virtual)

        diagnostics = self._linter.lint(resolved.physical)
        if not diagnostics:
            self._audit.record(resolved.virtual, ActionKind.LINT, AuditStatus.SUCCESS, "clean")
            return ToolOutput(text=f"LINT: passed for '{resolved.virtual}'", path=resolved.virtual)

        lines = [f"LINT_ERROR: {len(diagnostics)} diagnostic(s) in '{resolved.virtual}'"]
        lines.extend(f"  - {d}" for d in diagnostics)
        lines.append("NEXT: propose_fix with corrected content, then write_fix.")
        report = "\n".join(lines)
        self._audit.record(resolved.virtual, ActionKind.LINT, AuditStatus.LINT_ERROR, report)
        return ToolOutput(text=report, ok=False, kind=ResultKind.VALIDATION_FAILED, path=resolved.virtual)

    def _walk(self, directory: ResolvedPath, recursive: bool, entries: list[dict[str, str]]) -> None:
        for child in sorted(directory.physical.iterdir(), key=lambda p: p.name):
            if len(entries) >= MAX_LIST_ENTRIES:
                return
            if child.name in IGNORED_NAMES:
                continue

            child_virtual = child.name if directory.virtual == "." else f"{directory.virtual}/{child.name}"
            try:
                child_resolved = self._resolver.resolve(child_virtual)
            except AccessDenied:
                logger.debug(f"Listing hides restricted entry: {child_virtual}")
                continue

            is_dir = child_resolved.physical.is_dir()
            entries.append({
                "name": child.name,
                "type": "directory" if is_dir else "file",
                "path": child_resolved.virtual,
            })
            # Symlinked directories are listed but never entered
            if recursive and is_dir and not child.is_symlink():
                self._walk(child_resolved, recursive, entries)

    def write(self, path: str, content: str) -> ToolOutput:
        """Write approved content, then lint and verify it.

        Raises:
            AccessDenied: the path fails sandbox resolution or is a directory.
            ApprovalRequired: no live approval matches this path (and content).
            IncompleteContent: the content looks truncated or like a diff.
        """
        resolved = self._resolver.resolve(path)
        if resolved.physical.is_dir():
            raise AccessDenied(path, "target is a directory")

        expected = content if self.config.require_exact_content else None
        proposal = self._gate.require_write(resolved, expected)

        existed = resolved.physical.exists()
        original = resolved.physical.read_text(encoding="utf-8", errors="replace") if existed else ""
        action = ActionKind.WRITE_TEST if is_test_path(resolved.virtual) else ActionKind.WRITE_SRC

        try:
            self.check_complete(resolved.virtual, content, original)
        except IncompleteContent as e:
            self._audit.record(resolved.virtual, action, AuditStatus.VALIDATION_FAILED, str(e), detail="not written")
            raise

        resolved.physical.parent.mkdir(parents=True, exist_ok=True)
        resolved.physical.write_text(content, encoding="utf-8")
        self._gate.consume(resolved)
        logger.info(f"Wrote {resolved.virtual} ({len(content)} chars, proposal {proposal.proposal_id})")

        lint_skipped = not self._linter.supports(resolved.physical)
        diagnostics: tuple[Diagnostic, ...] = ()
        if not lint_skipped:
            diagnostics = tuple(self._linter.lint(resolved.physical))

        verification = None
        if not diagnostics and self.config.verify_command and self._commands is not None:
            verification = self._commands.run(self.config.verify_command)

        outcome = WriteOutcome(
            path=resolved.virtual,
            action=action,
            chars_written=len(content),
            diagnostics=diagnostics,
            lint_skipped=lint_skipped,
            verification=verification,
        )

        if not outcome.ok and self.config.revert_on_validation_failure:
            if existed:
                resolved.physical.write_text(original, encoding="utf-8")
            else:
                resolved.physical.unlink()
            outcome = replace(outcome, reverted=True)
            logger.info(f"Reverted {resolved.virtual} after failed validation")

        report = outcome.report()
        self._audit.record(resolved.virtual, action, outcome.status, report, detail=proposal.proposal_id)
        if not outcome.ok:
            logger.info(f"  {outcome.status.value}: {resolved.virtual}")

        return ToolOutput(
            text=report,
            ok=outcome.ok,
            kind=ResultKind.OK if outcome.ok else ResultKind.VALIDATION_FAILED,
            path=resolved.virtual,
        )

    def check_complete(self, path: str, content: str, original: str) -> None:
        """Raise IncompleteContent when ``content`` is not a whole file."""
        if DIFF_HUNK_RE.search(content) or DIFF_HEADER_RE.search(content):
            raise IncompleteContent(path, "content looks like a unified diff, not a complete file")

        new_len = len(content.strip())
        old_len = len(original.strip())
        if old_len and new_len < self.config.min_length_ratio * old_len:
            raise IncompleteContent(
                path,
                f"new content is {new_len} chars, under {self.config.min_length_ratio:.0%} "
                f"of the original {old_len} chars",
            )

        if (
            self.config.require_module_marker
            and MODULE_MARKER_RE.search(original)
            and not MODULE_MARKER_RE.search(content)
        ):
            raise IncompleteContent(path, "the original file has import/export statements but the new content has none")
