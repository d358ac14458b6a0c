"""Kernel - Main Orchestration Loop.

The Kernel drives one remediation session:
    model turn -> tool calls -> registry -> results -> transcript -> next turn

State machine: INIT -> RUNNING -> {SUCCESS, FAILURE, BUDGET_EXHAUSTED}

INVARIANTS:
1. The model never executes, it only emits tool calls
2. Tool calls in a turn are dispatched serially, in emitted order
3. Exactly one tool result per tool call
4. Nudges are appended after the turn's tool results, never between them
5. Any non-KernelError exception ends the session as FAILURE with a rollback
6. The host process never sees an exception from inside the loop
7. Every transcript append is written to the session ledger
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .audit import AUDIT_DB_NAME, AuditLog
from .checkpoint import CheckpointStore
from .collaborators import (
    Auditor,
    KnowledgeBase,
    Linter,
    ModelClient,
    NullLinter,
    NullVersionControl,
    StaticKnowledgeBase,
    VersionControl,
)
from .commands import CommandConfig, CommandExecutor, CommandGate
from .errors import ResultKind
from .executor import SandboxedExecutor, WriteConfig
from .gate import ApprovalGate
from .guards import Guard, default_guards
from .ledger import LEDGER_DIR_NAME, SessionLedger, create_ledger
from .sandbox import SandboxConfig, SandboxResolver, canonicalize
from .scratchpad import Scratchpad
from .state import Message, Role, SessionContext, SessionStatus, ToolCall, ToolResult
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".warden_state"

DEFAULT_SYSTEM_PROMPT = """You are a security remediation agent working inside a sandboxed project.
Workflow for every file you change:
1. read_file / list_files to understand the code.
2. propose_fix with the COMPLETE new file content. Wait for APPROVED.
3. write_fix with exactly the approved content for exactly the same path.
4. run_command to run the tests.
An approval authorizes one write to one path. Use get_status when unsure of the next step
and run_lint to re-check a file without rewriting it.
When the vulnerability is fixed and verified, reply with {signal}."""

EMPTY_TURN_NUDGE = (
    "Your last response contained no text and no tool calls. "
    "Call a tool to continue, or reply with {signal} if the remediation is complete."
)


@dataclass
class KernelConfig:
    """Configuration for one kernel session."""

    model_name: str = "scripted"
    max_steps: int = 30
    max_empty_turns: int = 2
    termination_signals: tuple[str, ...] = ("REMEDIATION_COMPLETE",)
    guards: tuple[Guard, ...] = field(default_factory=default_guards)
    fresh_start: bool = False
    audit_db_name: str = AUDIT_DB_NAME

    # Component configs
    command_config: CommandConfig = field(default_factory=CommandConfig)
    write_config: WriteConfig = field(default_factory=WriteConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def primary_signal(self) -> str:
        return self.termination_signals[0] if self.termination_signals else "REMEDIATION_COMPLETE"


@dataclass
class KernelResult:
    """Result of one session."""

    success: bool
    status: SessionStatus
    task_id: str
    completion_reason: str
    total_steps: int
    total_dispatches: int
    failed_dispatches: int
    nudges: int
    duration_seconds: float
    ledger_path: str
    audit_db_path: str
    fatal_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "task_id": self.task_id,
            "completion_reason": self.completion_reason,
            "total_steps": self.total_steps,
            "total_dispatches": self.total_dispatches,
            "failed_dispatches": self.failed_dispatches,
            "nudges": self.nudges,
            "duration_seconds": self.duration_seconds,
            "ledger_path": self.ledger_path,
            "audit_db_path": self.audit_db_path,
            "fatal_error": self.fatal_error,
        }


@dataclass
class SessionComponents:
    """Everything the tool surface is built from, owned by one session."""

    resolver: SandboxResolver
    audit_log: AuditLog
    checkpoints: CheckpointStore
    gate: ApprovalGate
    commands: CommandExecutor
    executor: SandboxedExecutor
    registry: ToolRegistry
    scratchpad: Scratchpad | None = None


def restrict_state(sandbox: SandboxConfig, state_dir: Path | str, audit_db_name: str) -> SandboxConfig:
    """Deny the audit database and session ledgers to every tool.

    The whole state directory is denied unless it encloses a sandbox root,
    in which case only the database and the ledger directory are.
    """
    state_path = canonicalize(state_dir)
    encloses_root = any(
        root == state_path or root.startswith(state_path.rstrip(os.sep) + os.sep)
        for root in sandbox.roots().values()
    )
    if encloses_root:
        denied = (os.path.join(state_path, audit_db_name), os.path.join(state_path, LEDGER_DIR_NAME))
    else:
        denied = (state_path,)

    patterns = sandbox.restricted_patterns + (audit_db_name, f"{audit_db_name}-*")
    return replace(
        sandbox,
        restricted_patterns=tuple(dict.fromkeys(patterns)),
        denied_paths=sandbox.denied_paths + denied,
    )


def build_components(
    sandbox: SandboxConfig,
    state_dir: Path | str,
    auditor: Auditor,
    linter: Linter | None = None,
    knowledge: KnowledgeBase | None = None,
    config: KernelConfig | None = None,
    default_evidence: str = "",
) -> SessionComponents:
    """Wire resolver, audit log, checkpoints, gate, executors and registry.

    Kernel state is added to the sandbox restrictions, see restrict_state().
    """
    config = config or KernelConfig()
    db_path = Path(state_dir) / config.audit_db_name

    resolver = SandboxResolver(restrict_state(sandbox, state_dir, config.audit_db_name))
    audit_log = AuditLog(db_path)
    checkpoints = CheckpointStore(db_path)
    if config.fresh_start:
        audit_log.clear()
        checkpoints.clear()

    gate = ApprovalGate(resolver, auditor, checkpoints, audit_log, default_evidence=default_evidence)
    commands = CommandExecutor(CommandGate(config.command_config), resolver.project_root, audit_log)
    executor = SandboxedExecutor(
        resolver,
        gate,
        linter or NullLinter(),
        audit_log,
        commands=commands,
        config=config.write_config,
    )
    registry = ToolRegistry(
        resolver,
        gate,
        executor,
        commands,
        checkpoints,
        audit_log,
        knowledge or StaticKnowledgeBase(),
        completion_signal=config.primary_signal,
    )
    scratchpad = Scratchpad(resolver.memory_root) if resolver.memory_root else None
    return SessionComponents(resolver, audit_log, checkpoints, gate, commands, executor, registry, scratchpad)


def run_session(
    task_id: str,
    target_path: str,
    vulnerability: str,
    sandbox: SandboxConfig,
    model: ModelClient,
    auditor: Auditor,
    linter: Linter | None = None,
    vcs: VersionControl | None = None,
    knowledge: KnowledgeBase | None = None,
    config: KernelConfig | None = None,
    state_dir: Path | str = DEFAULT_STATE_DIR,
    ledger: SessionLedger | None = None,
) -> KernelResult:
    """Run one remediation session to a terminal state.

    The execution loop is:
        1. Model returns a turn (text and/or tool calls)
        2. Empty turn: nudge once, FAILURE on the second in a row
        3. Termination signal in the text: SUCCESS
        4. Otherwise dispatch every call in order, then append guard nudges
        5. Count the turn; BUDGET_EXHAUSTED once max_steps turns are used

    Args:
        task_id: Unique identifier for this session.
        target_path: File the vulnerability lives in (virtual path).
        vulnerability: Description of the finding; the default audit evidence.
        sandbox: Roots the tools may touch.
        model: Turn function.
        auditor: Reviews every proposal.
        linter: Run after each write (defaults to no linting).
        vcs: Rolled back on FAILURE (defaults to a recorder that touches nothing).
        knowledge: Backs get_knowledge.
        config: Kernel configuration.
        state_dir: Directory for the audit database and ledgers.
        ledger: Optional ledger (creates a new one if not provided).

    Returns:
        KernelResult with the terminal state and statistics.
    """
    start_time = time.perf_counter()
    config = config or KernelConfig()
    vcs = vcs or NullVersionControl()
    state_dir = Path(state_dir).resolve()

    components = build_components(
        sandbox,
        state_dir,
        auditor,
        linter=linter,
        knowledge=knowledge,
        config=config,
        default_evidence=vulnerability,
    )
    project_root = components.resolver.project_root
    if state_dir == project_root or project_root in state_dir.parents:
        logger.warning(f"State dir {state_dir} is inside the project root; a rollback may remove it")

    ledger = ledger or create_ledger(task_id, state_dir)
    ctx = SessionContext(
        task_id=task_id,
        target_path=target_path,
        vulnerability=vulnerability,
        max_steps=config.max_steps,
    )
    ledger.record_start(ctx, config.model_name, {"project_root": str(project_root)})

    def append(message: Message) -> None:
        ctx.append(message)
        ledger.record_message(ctx, message)

    signal = config.primary_signal
    append(Message(Role.SYSTEM, config.system_prompt.format(signal=signal)))
    append(Message(
        Role.USER,
        f"Target file: {target_path}\nVulnerability: {vulnerability}\n"
        f"Fix the vulnerability, verify it with the tests, then reply with {signal}.",
    ))

    ctx.transition(SessionStatus.RUNNING)
    schemas = components.registry.schemas()

    logger.info(f"Starting session {task_id}: {target_path}")
    logger.info(f"Project root: {project_root}")
    logger.info(f"Model: {model.get_name()} ({config.model_name})")

    total_dispatches = 0
    failed_dispatches = 0
    total_nudges = 0
    empty_streak = 0
    fatal_error: str | None = None

    while not ctx.status.terminal:
        try:
            turn = model.complete(list(ctx.transcript), schemas)
        except Exception as e:
            logger.exception("Model collaborator failed")
            fatal_error = f"model collaborator failed: {type(e).__name__}: {e}"
            _fail(ctx, vcs, project_root, fatal_error)
            break

        ctx.step_index += 1
        logger.info(f"Step {ctx.step_index}/{config.max_steps}: {len(turn.tool_calls)} tool call(s)")

        if turn.empty:
            empty_streak += 1
            if empty_streak >= config.max_empty_turns:
                _fail(ctx, vcs, project_root, f"stalled: {empty_streak} consecutive empty turns")
                break
            append(Message(Role.SYSTEM, EMPTY_TURN_NUDGE.format(signal=signal), nudge="empty_turn"))
            total_nudges += 1
        else:
            empty_streak = 0
            append(Message(Role.ASSISTANT, turn.content, tool_calls=turn.tool_calls))

            matched = next((s for s in config.termination_signals if s in turn.content), None)
            if matched is not None:
                for call in turn.tool_calls:
                    append(Message.from_tool_result(_synthetic_result(call, ResultKind.SKIPPED, "SKIPPED: session completed before this call.")))
                ctx.transition(SessionStatus.SUCCESS, f"termination signal: {matched}")
                break

            pending_nudges: list[tuple[str, str]] = []
            for index, call in enumerate(turn.tool_calls):
                try:
                    result = components.registry.dispatch(call)
                except Exception as e:
                    logger.exception(f"Fatal error in tool '{call.name}'")
                    fatal_error = f"tool '{call.name}' failed: {type(e).__name__}: {e}"
                    append(Message.from_tool_result(_synthetic_result(call, ResultKind.FATAL, f"FATAL: {fatal_error}")))
                    for skipped in turn.tool_calls[index + 1:]:
                        append(Message.from_tool_result(_synthetic_result(skipped, ResultKind.SKIPPED, "SKIPPED: session aborted by a fatal error.")))
                    _fail(ctx, vcs, project_root, fatal_error)
                    break

                total_dispatches += 1
                if not result.ok:
                    failed_dispatches += 1
                append(Message.from_tool_result(result))
                ledger.record_dispatch(ctx, call, result)
                if components.scratchpad is not None:
                    components.scratchpad.record(call, result)

                for guard in config.guards:
                    nudge = guard(ctx.transcript)
                    if nudge and nudge not in (text for _, text in pending_nudges):
                        pending_nudges.append((getattr(guard, "__name__", "guard"), nudge))

            if ctx.status.terminal:
                break

            # Tool messages of one turn stay contiguous; guidance follows them
            for guard_name, text in pending_nudges:
                logger.info(f"  nudge ({guard_name}): {text[:120]}")
                append(Message(Role.SYSTEM, text, nudge=guard_name))
                ledger.record_nudge(ctx, guard_name, text)
                total_nudges += 1

        if ctx.step_index >= config.max_steps:
            ctx.transition(SessionStatus.BUDGET_EXHAUSTED, f"max steps reached: {config.max_steps}")

    duration = time.perf_counter() - start_time
    ledger.record_completion(ctx, {"fatal_error": fatal_error, "dispatches": total_dispatches})
    ctx.close()

    logger.info(f"Session {task_id} finished: {ctx.status.value} ({ctx.completion_reason})")
    logger.info(f"Stats: {total_dispatches} dispatches, {failed_dispatches} failed, {total_nudges} nudges, {duration:.2f}s")

    return KernelResult(
        success=ctx.status == SessionStatus.SUCCESS,
        status=ctx.status,
        task_id=task_id,
        completion_reason=ctx.completion_reason,
        total_steps=ctx.step_index,
        total_dispatches=total_dispatches,
        failed_dispatches=failed_dispatches,
        nudges=total_nudges,
        duration_seconds=duration,
        ledger_path=str(ledger.path),
        audit_db_path=str(components.audit_log.db_path),
        fatal_error=fatal_error,
    )


def _synthetic_result(call: ToolCall, kind: ResultKind, text: str) -> ToolResult:
    return ToolResult(tool_call_id=call.id, text=text, ok=False, kind=kind, tool_name=call.name)


def _fail(ctx: SessionContext, vcs: VersionControl, project_root: Path, reason: str) -> None:
    """Terminal FAILURE: request a rollback, then transition."""
    logger.error(f"Session {ctx.task_id} failing: {reason}")
    try:
        vcs.rollback(project_root)
    except Exception:
        logger.exception(f"Rollback of {project_root} failed")
        reason += " (rollback failed)"
    ctx.transition(SessionStatus.FAILURE, reason)


class Kernel:
    """Object-oriented wrapper holding the collaborators across sessions.

    Usage:
        kernel = Kernel(model, auditor, config=KernelConfig(max_steps=20))
        result = kernel.run("task-1", "src/auth.ts", "hardcoded JWT secret", sandbox)
    """

    def __init__(
        self,
        model: ModelClient,
        auditor: Auditor,
        linter: Linter | None = None,
        vcs: VersionControl | None = None,
        knowledge: KnowledgeBase | None = None,
        config: KernelConfig | None = None,
        state_dir: Path | str = DEFAULT_STATE_DIR,
    ):
        self.model = model
        self.auditor = auditor
        self.linter = linter
        self.vcs = vcs
        self.knowledge = knowledge
        self.config = config or KernelConfig()
        self.state_dir = Path(state_dir)
        self._run_count = 0

    def run(self, task_id: str, target_path: str, vulnerability: str, sandbox: SandboxConfig) -> KernelResult:
        self._run_count += 1
        return run_session(
            task_id=task_id,
            target_path=target_path,
            vulnerability=vulnerability,
            sandbox=sandbox,
            model=self.model,
            auditor=self.auditor,
            linter=self.linter,
            vcs=self.vcs,
            knowledge=self.knowledge,
            config=self.config,
            state_dir=self.state_dir,
        )

    @property
    def run_count(self) -> int:
        return self._run_count
