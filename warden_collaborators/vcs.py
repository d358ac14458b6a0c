"""Git version-control collaborator.

rollback: ``git reset --hard HEAD`` then ``git clean -fd`` in the project root,
and the agent memory root is emptied. The success flow (branch, commit, push,
pull request) is driven by the CLI after a SUCCESS session, never mid-loop.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from warden_kernel.collaborators import VersionControl

logger = logging.getLogger(__name__)


class VersionControlError(RuntimeError):
    """A git or gh invocation failed."""


def remediation_branch_name(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"fix/security-remediation-{now.strftime('%Y%m%d%H%M%S')}"


class GitVersionControl(VersionControl):
    """git + gh over subprocess (no shell).

    Usage:
        vcs = GitVersionControl(memory_root=Path(".agent_memory"))
        vcs.rollback(project_root)
    """

    def __init__(self, memory_root: Path | str | None = None, timeout_seconds: float = 120.0):
        self.memory_root = Path(memory_root) if memory_root else None
        self.timeout_seconds = timeout_seconds

    def _run(self, root: Path, *argv: str) -> str:
        logger.debug(f"vcs: {' '.join(argv)} (cwd={root})")
        try:
            completed = subprocess.run(
                list(argv),
                cwd=root,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise VersionControlError(f"'{' '.join(argv)}' timed out after {self.timeout_seconds}s") from e
        if completed.returncode != 0:
            raise VersionControlError(
                f"'{' '.join(argv)}' failed with exit {completed.returncode}: {completed.stderr.strip()}"
            )
        return completed.stdout.strip()

    def rollback(self, root: Path) -> None:
        root = Path(root)
        logger.warning(f"Rolling back uncommitted changes in {root}")
        self._run(root, "git", "reset", "--hard", "HEAD")
        self._run(root, "git", "clean", "-fd")

        if self.memory_root is not None and self.memory_root.is_dir():
            for child in self.memory_root.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            logger.info(f"Cleared agent memory: {self.memory_root}")

    def create_branch(self, root: Path, name: str) -> str:
        self._run(Path(root), "git", "checkout", "-b", name)
        logger.info(f"Created branch {name}")
        return name

    def commit(self, root: Path, message: str, paths: Iterable[str] = (".",)) -> str:
        root = Path(root)
        self._run(root, "git", "add", "--", *paths)
        self._run(root, "git", "commit", "-m", message)
        sha = self._run(root, "git", "rev-parse", "HEAD")
        logger.info(f"Committed {sha[:12]}: {message.splitlines()[0]}")
        return sha

    def push(self, root: Path, branch: str) -> str:
        output = self._run(Path(root), "git", "push", "-u", "origin", branch)
        logger.info(f"Pushed {branch} to origin")
        return output

    def create_pull_request(self, root: Path, branch: str, title: str, body: str) -> str:
        url = self._run(Path(root), "gh", "pr", "create", "--head", branch, "--title", title, "--body", body)
        logger.info(f"Opened pull request: {url}")
        return url
