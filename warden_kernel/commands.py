"""Command Gate / Executor - allowlisted shell execution.

The gate validates a command string BEFORE any subprocess exists. The executor
runs validated commands without a shell, in the project root, with a timeout.

INVARIANTS:
1. Rejected commands never spawn a subprocess
2. The allowlist is fixed at construction (no runtime extension)
3. Command failure is a normal result, never an exception
4. Every execution and every rejection is audited
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from .audit import ActionKind, AuditLog, AuditStatus
from .errors import CommandRejected

logger = logging.getLogger(__name__)

# Chaining and substitution characters
FORBIDDEN_COMMAND_CHARS = ("&", "|", ";", "\n", "\r", "`", "$(")

DEFAULT_ALLOWED_PREFIXES = (
    "npm install",
    "npm list",
    "npm test",
    "npm run test",
    "npx @biomejs/biome",
    "ls",
)


@dataclass(frozen=True)
class CommandConfig:
    """Immutable command policy."""

    allowed_prefixes: tuple[str, ...] = field(default_factory=lambda: DEFAULT_ALLOWED_PREFIXES)
    timeout_seconds: float = 120.0
    max_output_chars: int = 8000


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one command."""

    command: str
    stdout: str
    stderr: str
    exit_status: int
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """stdout and stderr reported together."""
        parts = []
        if self.stdout.strip():
            parts.append(f"STDOUT:\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            parts.append(f"STDERR:\n{self.stderr.rstrip()}")
        return "\n".join(parts) or "(no output)"


class CommandGate:
    """Pure allowlist validator."""

    def __init__(self, config: CommandConfig | None = None):
        self._config = config or CommandConfig()

    @property
    def config(self) -> CommandConfig:
        return self._config

    def validate(self, command: str) -> list[str]:
        """Return the argv for ``command`` or raise CommandRejected."""
        if not isinstance(command, str) or not command.strip():
            raise CommandRejected(str(command), "empty command")

        for char in FORBIDDEN_COMMAND_CHARS:
            if char in command:
                raise CommandRejected(command, f"contains forbidden character {char!r}")

        normalized = " ".join(command.split())
        if not any(self._has_prefix(normalized, prefix) for prefix in self._config.allowed_prefixes):
            raise CommandRejected(
                command,
                "not in allowlist; allowed prefixes: " + ", ".join(self._config.allowed_prefixes),
            )

        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise CommandRejected(command, f"unparseable command: {e}") from e
        return argv

    def is_allowed(self, command: str) -> bool:
        try:
            self.validate(command)
            return True
        except CommandRejected:
            return False

    @staticmethod
    def _has_prefix(command: str, prefix: str) -> bool:
        # "ls" allows "ls -la" but not "lsblk"
        return command == prefix or command.startswith(prefix + " ")


class CommandExecutor:
    """Runs gate-approved commands in the sandbox root.

    Usage:
        executor = CommandExecutor(CommandGate(), project_root, audit_log)
        result = executor.run("npm test")
    """

    def __init__(self, gate: CommandGate, cwd: Path | str, audit_log: AuditLog):
        self._gate = gate
        self._cwd = Path(cwd)
        self._audit = audit_log

    @property
    def gate(self) -> CommandGate:
        return self._gate

    def run(self, command: str) -> CommandResult:
        """Validate and execute ``command``.

        Raises:
            CommandRejected: the command failed validation (nothing executed).
        """
        try:
            argv = self._gate.validate(command)
        except CommandRejected as e:
            logger.warning(f"Command rejected: {command!r} ({e.reason})")
            self._audit.record("SYSTEM", ActionKind.EXEC, AuditStatus.ACCESS_DENIED, str(e), detail=command)
            raise

        config = self._gate.config
        start = time.perf_counter()
        logger.info(f"Executing: {command}")
        try:
            completed = subprocess.run(
                argv,
                cwd=self._cwd,
                capture_output=True,
                text=True,
                timeout=config.timeout_seconds,
                env={**os.environ, "CI": "1"},
            )
            result = CommandResult(
                command=command,
                stdout=completed.stdout[-config.max_output_chars:],
                stderr=completed.stderr[-config.max_output_chars:],
                exit_status=completed.returncode,
                duration_seconds=time.perf_counter() - start,
            )
        except subprocess.TimeoutExpired:
            result = CommandResult(
                command=command,
                stdout="",
                stderr=f"Command timed out after {config.timeout_seconds}s",
                exit_status=-1,
                duration_seconds=time.perf_counter() - start,
                timed_out=True,
            )
        except FileNotFoundError as e:
            # Missing executable is an ordinary command failure
            result = CommandResult(
                command=command,
                stdout="",
                stderr=f"Executable not found: {e}",
                exit_status=127,
                duration_seconds=time.perf_counter() - start,
            )

        status = AuditStatus.SUCCESS if result.ok else AuditStatus.COMMAND_ERROR
        self._audit.record("SYSTEM", ActionKind.EXEC, status, result.output, detail=command)
        logger.info(f"  exit={result.exit_status} ({result.duration_seconds:.2f}s)")
        return result
