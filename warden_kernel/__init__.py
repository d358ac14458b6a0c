"""Patch Warden Remediation Kernel.

A supervising kernel for model-driven vulnerability remediation that enforces:
- Sandboxed paths (every path resolves inside a configured root)
- Propose -> audit -> commit for every file write
- Allowlisted, shell-free command execution
- An append-only audit trail with checkpoint recovery

Non-Negotiable Invariants:
1. No unapproved write ever reaches disk
2. An approval authorizes one write to one path
3. Rejected commands never spawn a process
4. The audit log only grows
5. Tool errors are results, never crashes
6. Unexpected failures end the session with a rollback
"""

from .errors import (
    AccessDenied,
    ApprovalRequired,
    CommandRejected,
    IncompleteContent,
    KernelError,
    ResultKind,
    SchemaError,
)
from .sandbox import ResolvedPath, SandboxConfig, SandboxResolver
from .commands import CommandConfig, CommandExecutor, CommandGate, CommandResult
from .audit import ActionKind, AuditLog, AuditLogEntry, AuditStatus
from .checkpoint import CheckpointNotFound, CheckpointStore
from .proposal import Approved, Proposal, ProposalState, Rejected, Verdict
from .state import Message, Role, SessionContext, SessionStatus, ToolCall, ToolOutput, ToolResult
from .collaborators import (
    Auditor,
    Diagnostic,
    KnowledgeBase,
    Linter,
    ModelClient,
    ModelTurn,
    NullLinter,
    NullVersionControl,
    ScriptedModel,
    StaticAuditor,
    StaticKnowledgeBase,
    VersionControl,
)
from .gate import ApprovalGate
from .executor import SandboxedExecutor, WriteConfig
from .tools import TOOL_SPECS, ToolRegistry
from .guards import Guard, default_guards, stuck_editing, stuck_reading, unapproved_write
from .ledger import LedgerEntry, SessionLedger, create_ledger
from .scratchpad import Scratchpad
from .kernel import Kernel, KernelConfig, KernelResult, build_components, restrict_state, run_session

__version__ = "1.0.0"
__all__ = [
    # Errors
    "KernelError",
    "AccessDenied",
    "SchemaError",
    "ApprovalRequired",
    "IncompleteContent",
    "CommandRejected",
    "ResultKind",
    # Sandbox
    "SandboxConfig",
    "SandboxResolver",
    "ResolvedPath",
    # Commands
    "CommandConfig",
    "CommandGate",
    "CommandExecutor",
    "CommandResult",
    # Audit / checkpoints
    "AuditLog",
    "AuditLogEntry",
    "ActionKind",
    "AuditStatus",
    "CheckpointStore",
    "CheckpointNotFound",
    # Proposals
    "Proposal",
    "ProposalState",
    "Approved",
    "Rejected",
    "Verdict",
    # State
    "Message",
    "Role",
    "SessionContext",
    "SessionStatus",
    "ToolCall",
    "ToolOutput",
    "ToolResult",
    # Collaborators
    "ModelClient",
    "ModelTurn",
    "Auditor",
    "Linter",
    "Diagnostic",
    "VersionControl",
    "KnowledgeBase",
    "ScriptedModel",
    "StaticAuditor",
    "NullLinter",
    "NullVersionControl",
    "StaticKnowledgeBase",
    # Gate / executor / tools
    "ApprovalGate",
    "SandboxedExecutor",
    "WriteConfig",
    "ToolRegistry",
    "TOOL_SPECS",
    # Guards
    "Guard",
    "default_guards",
    "stuck_reading",
    "stuck_editing",
    "unapproved_write",
    # Ledger
    "SessionLedger",
    "LedgerEntry",
    "create_ledger",
    "Scratchpad",
    # Kernel
    "run_session",
    "build_components",
    "restrict_state",
    "Kernel",
    "KernelConfig",
    "KernelResult",
]
