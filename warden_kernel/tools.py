"""Tool Registry - the fixed table of operations exposed to the model.

Every tool call arrives as untrusted JSON text. The registry parses it,
validates it against the tool's declared schema, dispatches it, and converts
every recoverable ``KernelError`` into a non-ok ToolResult.

INVARIANTS:
1. The tool table is fixed at construction
2. Exactly one ToolResult per ToolCall, referencing its id
3. Schema failures never reach a handler
4. Only non-KernelError exceptions leave dispatch() (the kernel treats them as fatal)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .audit import ActionKind, AuditLog, AuditStatus
from .checkpoint import CheckpointNotFound, CheckpointStore
from .collaborators import KnowledgeBase
from .commands import CommandExecutor
from .errors import AccessDenied, ApprovalRequired, KernelError, ResultKind, SchemaError
from .executor import SandboxedExecutor, is_test_path
from .gate import ApprovalGate
from .proposal import ProposalState
from .sandbox import SandboxResolver
from .state import ToolCall, ToolOutput, ToolResult

logger = logging.getLogger(__name__)

MAX_AUDIT_QUERY = 50
MAX_AUDIT_OUTPUT_CHARS = 2000

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "boolean": (bool,),
    "integer": (int,),
}


@dataclass(frozen=True)
class ToolSpec:
    """One entry of the tool table."""

    name: str
    description: str
    properties: dict[str, dict[str, Any]]
    required: tuple[str, ...] = ()

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function-calling form."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.properties,
                    "required": list(self.required),
                    "additionalProperties": False,
                },
            },
        }


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="read_file",
        description="Read a file. Directories return their listing; missing files return NOT_FOUND.",
        properties={"path": {"type": "string", "description": "Path relative to the project root."}},
        required=("path",),
    ),
    ToolSpec(
        name="list_files",
        description="List directory entries, skipping dependency caches, VCS metadata and build output.",
        properties={
            "path": {"type": "string", "description": "Directory relative to the project root."},
            "recursive": {"type": "boolean", "description": "Walk subdirectories too."},
        },
        required=("path",),
    ),
    ToolSpec(
        name="propose_fix",
        description=(
            "Submit the COMPLETE new content of one file for security review. "
            "Returns APPROVED or REJECTED with the auditor's rationale. "
            "An approval authorizes exactly one write_fix to exactly this path."
        ),
        properties={
            "path": {"type": "string"},
            "code": {"type": "string", "description": "The complete, full source of the file."},
        },
        required=("path", "code"),
    ),
    ToolSpec(
        name="write_fix",
        description=(
            "Overwrite a file with content previously APPROVED by propose_fix for the same path. "
            "Include every line, every import and every function. Never send snippets or diffs. "
            "The file is linted after writing and the result is returned."
        ),
        properties={
            "path": {"type": "string"},
            "code": {"type": "string", "description": "The approved, complete source of the file."},
        },
        required=("path", "code"),
    ),
    ToolSpec(
        name="run_lint",
        description="Lint a file as it is on disk, without rewriting it.",
        properties={"path": {"type": "string"}},
        required=("path",),
    ),
    ToolSpec(
        name="run_command",
        description="Run an allowlisted command (package install/list/test, the linter, ls) in the project root.",
        properties={"command": {"type": "string", "description": "e.g. 'npm test'. No chaining characters."}},
        required=("command",),
    ),
    ToolSpec(
        name="checkpoint_manager",
        description=(
            "save: store the last approved content of a file. "
            "load: retrieve the last approved content, e.g. to recover after a failed write."
        ),
        properties={
            "action": {"type": "string", "enum": ["save", "load"]},
            "path": {"type": "string"},
            "content": {"type": "string", "description": "Required for save."},
        },
        required=("action", "path"),
    ),
    ToolSpec(
        name="get_status",
        description="Report whether a file is approved, written, linted and tested, and the next step.",
        properties={"path": {"type": "string"}},
        required=("path",),
    ),
    ToolSpec(
        name="get_audit_logs",
        description="Most recent audit entries first, optionally filtered by status.",
        properties={
            "limit": {"type": "integer", "description": f"1-{MAX_AUDIT_QUERY}, default 10."},
            "status": {"type": "string", "enum": [s.value for s in AuditStatus]},
        },
    ),
    ToolSpec(
        name="get_knowledge",
        description="Look up a remediation reference pattern (e.g. 'jwt', 'zod', 'env').",
        properties={"query": {"type": "string"}},
        required=("query",),
    ),
)


def parse_arguments(call: ToolCall) -> dict[str, Any]:
    """Decode ``call.raw_arguments`` into a dict or raise SchemaError."""
    raw = call.raw_arguments
    if raw is None or not str(raw).strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SchemaError(call.name, [f"arguments are not valid JSON ({e.msg} at position {e.pos})"]) from e
    if not isinstance(data, dict):
        raise SchemaError(call.name, [f"arguments must be a JSON object, got {type(data).__name__}"])
    return data


def validate_arguments(spec: ToolSpec, args: dict[str, Any]) -> list[str]:
    """Validate ``args`` against ``spec``, return list of errors.

    This is a pure validation function - no side effects.
    """
    errors: list[str] = []

    for name in spec.required:
        if name not in args:
            errors.append(f"missing required argument '{name}'")

    for name, value in args.items():
        prop = spec.properties.get(name)
        if prop is None:
            errors.append(f"unknown argument '{name}'; allowed: {sorted(spec.properties)}")
            continue

        expected = prop.get("type", "string")
        python_types = _JSON_TYPES.get(expected, (object,))
        # bool is an int subclass; JSON true is not an integer
        if not isinstance(value, python_types) or (expected == "integer" and isinstance(value, bool)):
            errors.append(f"argument '{name}' must be {expected}, got {type(value).__name__}")
            continue

        if "enum" in prop and value not in prop["enum"]:
            errors.append(f"argument '{name}' must be one of {prop['enum']}, got {value!r}")

    return errors


class ToolRegistry:
    """Parses, validates and dispatches model tool calls.

    Usage:
        registry = ToolRegistry(resolver, gate, executor, commands, checkpoints, audit, knowledge)
        result = registry.dispatch(ToolCall("call_1", "read_file", '{"path": "src/a.ts"}'))
    """

    def __init__(
        self,
        resolver: SandboxResolver,
        gate: ApprovalGate,
        executor: SandboxedExecutor,
        commands: CommandExecutor,
        checkpoints: CheckpointStore,
        audit_log: AuditLog,
        knowledge: KnowledgeBase,
        completion_signal: str = "REMEDIATION_COMPLETE",
    ):
        self._resolver = resolver
        self._gate = gate
        self._executor = executor
        self._commands = commands
        self._checkpoints = checkpoints
        self._audit = audit_log
        self._knowledge = knowledge
        self._completion_signal = completion_signal

        self._specs = {spec.name: spec for spec in TOOL_SPECS}
        self._handlers: dict[str, Callable[[dict[str, Any]], ToolOutput]] = {
            "read_file": self._read_file,
            "list_files": self._list_files,
            "propose_fix": self._propose_fix,
            "write_fix": self._write_fix,
            "run_lint": self._run_lint,
            "run_command": self._run_command,
            "checkpoint_manager": self._checkpoint_manager,
            "get_status": self._get_status,
            "get_audit_logs": self._get_audit_logs,
            "get_knowledge": self._get_knowledge,
        }

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.to_schema() for spec in self._specs.values()]

    @property
    def tool_names(self) -> list[str]:
        return list(self._specs)

    def dispatch(self, call: ToolCall) -> ToolResult:
        """Run one tool call and return its result.

        Recoverable errors become non-ok results. Anything else propagates.
        """
        spec = self._specs.get(call.name)
        if spec is None:
            error = SchemaError(call.name, [f"unknown tool; available tools: {', '.join(self._specs)}"])
            return ToolOutput(text=str(error), ok=False, kind=error.result_kind).bind(call)

        try:
            args = parse_arguments(call)
            problems = validate_arguments(spec, args)
            if problems:
                raise SchemaError(call.name, problems)
            output = self._handlers[call.name](args)
        except KernelError as e:
            logger.info(f"  {call.name} -> {e.result_kind.value}: {str(e).splitlines()[0]}")
            if isinstance(e, (AccessDenied, ApprovalRequired)):
                path = e.path or "?"
                self._audit.record(path, self._action_for(call.name, path), AuditStatus.ACCESS_DENIED, str(e))
            return ToolOutput(text=str(e), ok=False, kind=e.result_kind, path=e.path).bind(call)

        logger.debug(f"  {call.name} -> {output.kind.value}")
        return output.bind(call)

    @staticmethod
    def _action_for(tool_name: str, path: str) -> ActionKind:
        if tool_name == "write_fix":
            return ActionKind.WRITE_TEST if is_test_path(path) else ActionKind.WRITE_SRC
        if tool_name == "run_lint":
            return ActionKind.LINT
        if tool_name == "propose_fix":
            return ActionKind.PROPOSE
        return ActionKind.READ

    def _read_file(self, args: dict[str, Any]) -> ToolOutput:
        return self._executor.read(args["path"])

    def _list_files(self, args: dict[str, Any]) -> ToolOutput:
        return self._executor.list_files(args["path"], bool(args.get("recursive", False)))

    def _propose_fix(self, args: dict[str, Any]) -> ToolOutput:
        proposal = self._gate.propose(args["path"], args["code"])
        if proposal.approved:
            return ToolOutput(
                text=(
                    f"APPROVED: {proposal.display_path}\n"
                    f"RATIONALE: {proposal.rationale}\n"
                    f"NEXT: call write_fix for '{proposal.display_path}' with exactly this content."
                ),
                kind=ResultKind.APPROVED,
                path=proposal.display_path,
            )
        return ToolOutput(
            text=(
                f"REJECTED: {proposal.display_path}\n"
                f"RATIONALE: {proposal.rationale}\n"
                f"NEXT: address the rationale and call propose_fix again with the complete file."
            ),
            ok=False,
            kind=ResultKind.REJECTED,
            path=proposal.display_path,
        )

    def _write_fix(self, args: dict[str, Any]) -> ToolOutput:
        return self._executor.write(args["path"], args["code"])

    def _run_lint(self, args: dict[str, Any]) -> ToolOutput:
        return self._executor.lint(args["path"])

    def _run_command(self, args: dict[str, Any]) -> ToolOutput:
        result = self._commands.run(args["command"])
        header = f"COMMAND: {result.command}\nEXIT: {result.exit_status}"
        if result.timed_out:
            header += " (timed out)"
        return ToolOutput(
            text=f"{header}\n{result.output}",
            ok=result.ok,
            kind=ResultKind.OK if result.ok else ResultKind.COMMAND_FAILED,
        )

    def _checkpoint_manager(self, args: dict[str, Any]) -> ToolOutput:
        resolved = self._resolver.resolve(args["path"])
        action = args["action"]

        if action == "save":
            content = args.get("content")
            if content is None:
                raise SchemaError("checkpoint_manager", ["'content' is required for action 'save'"])
            reviewed = self._gate.last_reviewed(resolved)
            if reviewed is None or not reviewed.matches(content):
                raise ApprovalRequired(
                    resolved.virtual,
                    "checkpoints only hold reviewed content; this content does not match the latest approved proposal",
                )
            self._checkpoints.save(resolved.virtual, content)
            return ToolOutput(text=f"CHECKPOINT_SAVED: {resolved.virtual}", path=resolved.virtual)

        try:
            content = self._checkpoints.load(resolved.virtual)
        except CheckpointNotFound:
            return ToolOutput(
                text=f"NOT_FOUND: no checkpoint for '{resolved.virtual}'. Checkpoints are created when a proposal is approved.",
                ok=False,
                kind=ResultKind.NOT_FOUND,
                path=resolved.virtual,
            )
        return ToolOutput(text=f"CHECKPOINT_LOADED [{resolved.virtual}]:\n\n{content}", path=resolved.virtual)

    def _get_status(self, args: dict[str, Any]) -> ToolOutput:
        resolved = self._resolver.resolve(args["path"])
        state = self._gate.state(resolved)

        entries = self._audit.query(limit=MAX_AUDIT_QUERY, path=resolved.virtual)
        # Refused writes (denied, incomplete) never reached disk
        last_write = next(
            (
                e for e in entries
                if e.action_kind in (ActionKind.WRITE_SRC, ActionKind.WRITE_TEST)
                and e.status != AuditStatus.ACCESS_DENIED
                and e.detail != "not written"
            ),
            None,
        )
        written = last_write is not None

        lint = "not run"
        tests = "not run"
        if written:
            lint = "errors" if last_write.status == AuditStatus.LINT_ERROR else "clean"
            if last_write.status == AuditStatus.VALIDATION_FAILED:
                tests = "failed"
            execs = [e for e in self._audit.query(limit=MAX_AUDIT_QUERY, action=ActionKind.EXEC) if e.entry_id > last_write.entry_id]
            if execs:
                tests = "passed" if execs[0].status == AuditStatus.SUCCESS else "failed"
            elif last_write.status == AuditStatus.SUCCESS and self._executor.config.verify_command:
                tests = "passed"

        if state in (ProposalState.NONE, ProposalState.PROPOSED, ProposalState.REJECTED):
            next_step = f"call propose_fix for '{resolved.virtual}' with the complete file"
        elif state == ProposalState.APPROVED:
            next_step = f"call write_fix for '{resolved.virtual}' with the approved content"
        elif lint == "errors":
            next_step = "fix the lint errors: propose_fix again with corrected content"
        elif tests == "not run":
            next_step = "run the tests with run_command (e.g. 'npm test')"
        elif tests == "failed":
            next_step = "inspect the failure with get_audit_logs, then propose_fix again"
        else:
            next_step = f"the file is fixed and verified; reply with {self._completion_signal}"

        lines = [
            f"STATUS: {resolved.virtual}",
            f"  approval: {state.value}",
            f"  written: {'yes' if written else 'no'}",
            f"  lint: {lint}",
            f"  tests: {tests}",
            f"NEXT STEP: {next_step}",
        ]
        return ToolOutput(text="\n".join(lines), path=resolved.virtual)

    def _get_audit_logs(self, args: dict[str, Any]) -> ToolOutput:
        limit = max(1, min(int(args.get("limit", 10)), MAX_AUDIT_QUERY))
        entries = self._audit.query(limit=limit, status=args.get("status"))
        records = []
        for entry in entries:
            record = entry.to_dict()
            record["output"] = record["output"][:MAX_AUDIT_OUTPUT_CHARS]
            records.append(record)
        return ToolOutput(text=json.dumps(records, indent=2) if records else "No audit entries.")

    def _get_knowledge(self, args: dict[str, Any]) -> ToolOutput:
        return ToolOutput(text=self._knowledge.lookup(args["query"]))
