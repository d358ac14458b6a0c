"""Error taxonomy for the remediation kernel.

Every recoverable failure is a ``KernelError``. The tool registry turns these
into non-ok tool results so the model can correct itself. Anything that is
NOT a ``KernelError`` is treated as fatal by the kernel.

INVARIANTS:
1. Recoverable errors never escape the tool registry
2. Each error knows which result kind it produces
3. Messages tell the model what to do next
"""

from __future__ import annotations

from enum import Enum


class ResultKind(Enum):
    """Tag attached to every tool result."""

    OK = "ok"
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    SCHEMA_ERROR = "schema_error"
    APPROVAL_REQUIRED = "approval_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    INCOMPLETE_CONTENT = "incomplete_content"
    VALIDATION_FAILED = "validation_failed"
    COMMAND_REJECTED = "command_rejected"
    COMMAND_FAILED = "command_failed"
    FATAL = "fatal"
    SKIPPED = "skipped"


class KernelError(Exception):
    """Base class for recoverable kernel errors."""

    result_kind = ResultKind.FATAL

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class AccessDenied(KernelError):
    """Path escapes the sandbox or touches a restricted file."""

    result_kind = ResultKind.ACCESS_DENIED

    def __init__(self, path: str, reason: str):
        self.reason = reason
        super().__init__(f"ACCESS_DENIED: '{path}' ({reason})", path)


class SchemaError(KernelError):
    """Tool arguments do not match the tool's declared schema."""

    result_kind = ResultKind.SCHEMA_ERROR

    def __init__(self, tool_name: str, problems: list[str]):
        self.tool_name = tool_name
        self.problems = list(problems)
        detail = "; ".join(self.problems)
        super().__init__(
            f"SCHEMA_ERROR: invalid arguments for '{tool_name}': {detail}. "
            f"Call '{tool_name}' again with corrected arguments."
        )


class ApprovalRequired(KernelError):
    """A write was attempted without a matching, unconsumed approval."""

    result_kind = ResultKind.APPROVAL_REQUIRED

    def __init__(self, path: str, reason: str, last_approved: str | None = None):
        self.reason = reason
        self.last_approved = last_approved
        super().__init__(
            f"WRITE_BLOCKED: {path}\n"
            f"REASON: {reason}\n"
            f"LAST_APPROVED_PATH: {last_approved or 'NONE'}\n"
            f"REQUIRED ACTION: call 'propose_fix' for the exact path '{path}' "
            f"and wait for APPROVED before calling 'write_fix'. An approval for "
            f"one file never authorizes another.",
            path,
        )


class IncompleteContent(KernelError):
    """Write content looks like a snippet or diff rather than a whole file."""

    result_kind = ResultKind.INCOMPLETE_CONTENT

    def __init__(self, path: str, reason: str):
        self.reason = reason
        super().__init__(
            f"INCOMPLETE_CONTENT: {path}\n"
            f"REASON: {reason}\n"
            f"REQUIRED ACTION: send the COMPLETE file content, every import and "
            f"every function, never a snippet or a diff.",
            path,
        )


class CommandRejected(KernelError):
    """Shell command is not allowlisted or contains chaining characters."""

    result_kind = ResultKind.COMMAND_REJECTED

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"COMMAND_REJECTED: '{command}' ({reason})")
