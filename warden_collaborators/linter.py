"""Biome linter collaborator.

Runs ``npx @biomejs/biome check --reporter=json`` on one file and converts the
report into kernel Diagnostics. Only extensions Biome understands are linted.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any

from warden_kernel.collaborators import Diagnostic, Linter

logger = logging.getLogger(__name__)

BIOME_SUPPORTED_EXTENSIONS = frozenset({".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs", ".json", ".jsonc"})
ERROR_SEVERITIES = ("error", "fatal")


def parse_biome_report(raw: str) -> list[Diagnostic] | None:
    """Diagnostics from Biome's JSON reporter, or None when ``raw`` is not a report."""
    try:
        report = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(report, dict):
        return None

    diagnostics = []
    for item in report.get("diagnostics") or []:
        if str(item.get("severity", "error")).lower() not in ERROR_SEVERITIES:
            continue
        span = (item.get("location") or {}).get("span") or [0, 0]
        diagnostics.append(
            Diagnostic(
                code=str(item.get("category") or "biome"),
                message=_message_text(item),
                start=int(span[0]) if len(span) > 0 else 0,
                end=int(span[1]) if len(span) > 1 else 0,
            )
        )
    return diagnostics


def _message_text(item: dict[str, Any]) -> str:
    description = item.get("description")
    if isinstance(description, str) and description.strip():
        return description.strip()
    message = item.get("message")
    if isinstance(message, list):
        return "".join(part.get("content", "") for part in message if isinstance(part, dict)).strip()
    return str(message or "lint error")


class BiomeLinter(Linter):
    """Lints JS/TS/JSON files with Biome.

    Usage:
        linter = BiomeLinter(project_root)
        if linter.supports(path):
            diagnostics = linter.lint(path)
    """

    def __init__(self, project_root: Path | str, timeout_seconds: float = 60.0):
        self.project_root = Path(project_root)
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def available() -> bool:
        return shutil.which("npx") is not None

    def supports(self, path: Path) -> bool:
        return Path(path).suffix.lower() in BIOME_SUPPORTED_EXTENSIONS

    def lint(self, path: Path) -> list[Diagnostic]:
        argv = [
            "npx",
            "@biomejs/biome",
            "check",
            "--reporter=json",
            "--files-ignore-unknown=true",
            str(path),
        ]
        logger.debug(f"Linting with Biome: {path}")
        try:
            completed = subprocess.run(
                argv,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return [Diagnostic("biome/timeout", f"Biome did not finish within {self.timeout_seconds}s")]

        diagnostics = parse_biome_report(completed.stdout)
        if diagnostics is None:
            diagnostics = []
            if completed.returncode != 0:
                output = (completed.stderr or completed.stdout).strip()
                diagnostics.append(Diagnostic("biome", output[-2000:] or f"biome exited with {completed.returncode}"))
        elif not diagnostics and completed.returncode != 0:
            diagnostics.append(Diagnostic("biome", f"biome exited with {completed.returncode}"))

        if diagnostics:
            logger.info(f"Biome found {len(diagnostics)} issue(s) in {path}")
        return diagnostics
